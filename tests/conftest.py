from pathlib import Path

import pytest

from fakes import PDF_BYTES
from vnocr.services.metrics import ServiceMetrics
from vnocr.services.pipeline import OCRPipeline
from vnocr.services.scratch import ScratchManager
from vnocr.services.session_store import SessionRegistry


@pytest.fixture()
def pdf_bytes() -> bytes:
    return PDF_BYTES


@pytest.fixture()
def scratch(tmp_path: Path) -> ScratchManager:
    return ScratchManager(tmp_path / "vnocr")


@pytest.fixture()
def registry(scratch: ScratchManager) -> SessionRegistry:
    return SessionRegistry(scratch, retention_seconds=60)


@pytest.fixture()
def metrics() -> ServiceMetrics:
    return ServiceMetrics()


@pytest.fixture()
def make_pipeline(scratch: ScratchManager, registry: SessionRegistry, metrics: ServiceMetrics):
    created: list[OCRPipeline] = []

    def factory(
        rasterizer,
        recognizer,
        cleaner=None,
        concurrency: int = 3,
        background_workers: int = 2,
    ) -> OCRPipeline:
        pipeline = OCRPipeline(
            scratch=scratch,
            sessions=registry,
            metrics=metrics,
            rasterizer=rasterizer,
            recognizer=recognizer,
            cleaner=cleaner,
            concurrency=concurrency,
            background_workers=background_workers,
        )
        created.append(pipeline)
        return pipeline

    yield factory

    for pipeline in created:
        pipeline.shutdown()
