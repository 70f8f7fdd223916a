"""
Shared fixtures: in-memory backends on a fake clock, a local file store under
tmp_path and a pipeline wired from them.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from pageflow.config import PipelineSettings
from pageflow.job_queue import InMemoryJobQueue
from pageflow.monitoring import MetricsRegistry, PipelineMetrics
from pageflow.pipeline import DocumentPipeline
from pageflow.rate_limiter import InMemoryRateLimiter
from pageflow.storage import LocalFileStore
from pageflow.workflow_store import InMemoryWorkflowStore

from fakes import FakeClock, FakeExtractionClient


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def queue(clock):
    return InMemoryJobQueue(clock=clock)


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(clock=clock)


@pytest.fixture
def files(tmp_path):
    return LocalFileStore(str(tmp_path / "files"))


@pytest.fixture
def extractor():
    return FakeExtractionClient()


@pytest.fixture
def metrics():
    return PipelineMetrics(MetricsRegistry())


@pytest.fixture
def settings(tmp_path):
    return PipelineSettings(
        storage_dir=str(tmp_path / "files"),
        split_max_attempts=3,
        page_max_attempts=5,
        backoff_base_seconds=5.0,
    )


@pytest.fixture
def pipeline(store, queue, files, extractor, limiter, settings, metrics):
    return DocumentPipeline(
        store=store,
        queue=queue,
        files=files,
        extractor=extractor,
        rate_limiter=limiter,
        settings=settings,
        metrics=metrics,
    )
