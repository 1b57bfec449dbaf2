"""
Shared fixtures and fakes for the extraction pipeline tests.
"""

import asyncio
from typing import Callable

import pytest

import ai_extractor
import service_client
from models import ExtractionConfig, ExtractionResult, ProductRecord, PropertyValue


@pytest.fixture(autouse=True)
def _fresh_module_state():
    """Each test runs on its own event loop, so loop-bound globals are dropped."""
    ai_extractor._ai_semaphore = None
    service_client._http_client = None
    yield
    ai_extractor._ai_semaphore = None
    service_client._http_client = None


def make_records(count: int, with_url: bool = True) -> list[ProductRecord]:
    return [
        ProductRecord(
            id=f"item-{i}",
            product_name=f"Product {i}",
            article_number=f"ART-{i}",
            url=f"https://shop.example.com/p/{i}" if with_url else None,
        )
        for i in range(1, count + 1)
    ]


def make_config(**overrides) -> ExtractionConfig:
    values = dict(concurrency=3, pdf_enabled=False, reset_on_stop=False)
    values.update(overrides)
    return ExtractionConfig(**values)


async def fake_extract(record, config, **kwargs) -> ExtractionResult:
    await asyncio.sleep(0)
    return ExtractionResult(
        article_number=record.article_number,
        product_name=record.product_name,
        properties={"Color": PropertyValue(value="red", confidence=90.0)},
    )


async def fake_web(url, article_number=None) -> str:
    await asyncio.sleep(0)
    return f"Web page for {article_number}"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.001)
    await asyncio.wait_for(_poll(), timeout)


class SnapshotRecorder:
    """Progress observer that keeps every published snapshot."""

    def __init__(self):
        self.snapshots: list[list] = []

    def __call__(self, items):
        self.snapshots.append(items)
