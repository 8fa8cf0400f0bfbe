"""
Pytest configuration and shared fixtures for boltindex tests.

Every external collaborator is faked: the memory probe, the generative
model and the text encoder. Fakes are deterministic so two runs over the
same inputs produce byte-identical index state.
"""
import asyncio
import hashlib
from typing import List, Optional

import numpy as np
import pytest

from boltindex.core.memory import MemoryMonitor
from boltindex.embedding.generator import EmbeddingGenerator

TEST_DIMENSION = 64


# ============================================================================
# Fakes
# ============================================================================

class FakeProbe:
    """Memory probe returning a settable reading."""

    def __init__(self, value: int = 0):
        self.value = value
        self.calls = 0

    def __call__(self) -> int:
        self.calls += 1
        if isinstance(self.value, Exception):
            raise self.value
        return self.value


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeLLM:
    """
    Deterministic generative collaborator.

    ``failures`` makes the first N calls raise; ``delay`` makes every call
    sleep first (used for timeout and cancellation tests).
    """

    def __init__(self, failures: int = 0, delay: float = 0.0, always_fail: bool = False):
        self.failures = failures
        self.delay = delay
        self.always_fail = always_fail
        self.calls = 0
        self.prompts: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def generate(self, prompt: str) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if self.always_fail or self.calls <= self.failures:
                raise RuntimeError(f"model unavailable (call {self.calls})")
            digest = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
            return f"Summary {digest}: {prompt[-80:]}"
        finally:
            self.in_flight -= 1


class FakeEncoder:
    """Deterministic text encoder: the vector is seeded by the text hash."""

    def __init__(self, dimension: int = TEST_DIMENSION):
        self.dimension = dimension
        self.calls = 0

    def encode(self, text: str) -> List[float]:
        self.calls += 1
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
        rng = np.random.default_rng(seed)
        return rng.normal(size=self.dimension).tolist()


async def no_sleep(seconds: float):
    return None


def make_generator(
    llm: Optional[FakeLLM] = None,
    encoder: Optional[FakeEncoder] = None,
    dimension: int = TEST_DIMENSION,
    **kwargs,
) -> EmbeddingGenerator:
    kwargs.setdefault("backoff", 0.0)
    kwargs.setdefault("sleep", no_sleep)
    kwargs.setdefault("timeout", 5.0)
    return EmbeddingGenerator(
        llm=llm or FakeLLM(),
        encoder=encoder or FakeEncoder(dimension),
        dimension=dimension,
        **kwargs,
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def fake_probe():
    return FakeProbe(0)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def quiet_monitor(fake_probe):
    """Monitor that always reports (near) zero usage and never throttles."""
    return MemoryMonitor(min_interval=0.0, probe=fake_probe)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def generator(fake_llm, fake_encoder):
    return make_generator(fake_llm, fake_encoder)


@pytest.fixture
def sample_source() -> str:
    lines = []
    for i in range(120):
        if i % 10 == 0:
            lines.append(f"def handler_{i}(request, context):")
        elif i % 10 == 5:
            lines.append(f"    if request.get('id') == {i}:")
        else:
            lines.append(f"        value_{i} = compute(value_{i - 1}, {i})  # step")
    return "\n".join(lines) + "\n"
