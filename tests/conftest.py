"""Pytest fixtures shared by the transformer tests.

Clears the MLX cache between tests so the small random models built in
each test do not accumulate memory across a session.
"""

import gc

import mlx.core as mx
import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "fast: quick unit tests that do not load model weights")


def _clear_mlx_cache():
    if hasattr(mx, "clear_cache"):
        mx.clear_cache()
    elif mx.metal.is_available():
        mx.metal.clear_cache()


@pytest.fixture(autouse=True)
def cleanup_after_test():
    """Clean up MLX memory after each test."""
    yield
    gc.collect()
    _clear_mlx_cache()


@pytest.fixture(scope="class", autouse=True)
def cleanup_after_class():
    """More aggressive cleanup after all tests in a class complete."""
    yield
    gc.collect()
    gc.collect()
    _clear_mlx_cache()


@pytest.fixture(autouse=True)
def fixed_seed():
    mx.random.seed(0)
    yield
