from setuptools import setup, find_packages

setup(
    name="qwenimage-mlx",
    version="0.1.0",
    author="qwenimage-mlx contributors",
    description="An MLX implementation of the Qwen-Image joint diffusion transformer.",
    long_description=open('README.md').read(),
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: MacOS",
    ],
    python_requires='>=3.11',
    install_requires=[
        'mlx>=0.29.0',
        'mlx[cpu]>=0.29.0; sys_platform == "linux"',
        'numpy>=2.0.0',
    ],
    extras_require={
        "test": [
            'pytest>=8.0.0',
        ],
    },
)
