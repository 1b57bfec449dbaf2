"""
errors.py

Error taxonomy for the extraction pipeline.

    ValidationError   — bad input detected before a run starts; raised by
                        BatchController.start(), the run never begins.
    SoftSourceError   — one content source (a PDF file, the web fetch) failed;
                        logged by the worker, that source contributes nothing.
    HardCancellation  — the run was stopped while an item was in flight;
                        the item ends up "stopped", never "failed".
    ExtractionError   — the AI service failed or there was nothing to send it;
                        the item ends up "failed".

Anything else raised inside a worker is caught at the worker boundary and
turned into a failed item.
"""


class ProductExtractError(Exception):
    """Base class for every error raised by this service."""


class ValidationError(ProductExtractError):
    pass


class SoftSourceError(ProductExtractError):
    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class HardCancellation(ProductExtractError):
    pass


class ExtractionError(ProductExtractError):
    pass
