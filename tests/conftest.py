"""Shared pytest fixtures for all OmniCore tests."""

import numpy as np
import pytest
import torch


@pytest.fixture(
    params=[
        "cpu",
        pytest.param(
            "cuda",
            marks=pytest.mark.skipif(
                not torch.cuda.is_available(), reason="CUDA not available"
            ),
        ),
    ]
)
def device(request: pytest.FixtureRequest) -> torch.device:
    """Parametrized device fixture: yields CPU and (if available) CUDA.

    Every test of the batched tensor API should accept this fixture to ensure
    results come back on the caller's device. Never call .cuda() directly in
    tests.
    """
    return torch.device(request.param)


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator so sampling tests are reproducible."""
    return np.random.default_rng(1234)
