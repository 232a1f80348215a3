"""Error taxonomy for V(D)J annotation and repertoire metrics."""

from __future__ import annotations

from typing import Optional


class VDJError(Exception):
    """Base class for all errors raised by vdjatlas."""


class MalformedRecordError(VDJError, ValueError):
    """Chain columns of a single cell disagree on their token count."""

    def __init__(self, message: str, *, barcode: Optional[str] = None, column: Optional[str] = None):
        if barcode is not None:
            message = f"{message} (cell '{barcode}')"
        super().__init__(message)
        self.barcode = barcode
        self.column = column


class SampleNotFoundError(VDJError, KeyError):
    """A declared sample is missing or holds no chain calls."""

    def __init__(self, sample: str, message: Optional[str] = None):
        super().__init__(message or f"Sample '{sample}' yielded no chain calls")
        self.sample = sample

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicateBarcodeError(VDJError, ValueError):
    """Cell barcodes cannot be grouped unambiguously."""

    def __init__(self, message: str, *, sample: Optional[str] = None, barcodes=None):
        if sample is not None:
            message = f"{message} (sample '{sample}')"
        super().__init__(message)
        self.sample = sample
        self.barcodes = list(barcodes or [])


class MissingColumnError(VDJError, KeyError):
    """A referenced column is absent from the table."""

    def __init__(self, column: str, *, where: str = "table"):
        super().__init__(f"Column '{column}' not found in {where}")
        self.column = column

    def __str__(self) -> str:
        return str(self.args[0])


class MetricFunctionError(VDJError, RuntimeError):
    """A caller-supplied metric callable raised."""

    def __init__(self, metric: str, cluster, original: BaseException):
        super().__init__(
            f"Metric '{metric}' failed for {cluster!r}: {type(original).__name__}: {original}"
        )
        self.metric = metric
        self.cluster = cluster


class ExpressionError(VDJError, RuntimeError):
    """A caller-supplied predicate or mutate function raised on a cell."""

    def __init__(self, barcode: str, original: BaseException):
        super().__init__(
            f"Expression failed for cell '{barcode}': {type(original).__name__}: {original}"
        )
        self.barcode = barcode


class EmptyResultError(VDJError, ValueError):
    """A requested cluster or group has zero eligible cells."""

    def __init__(self, message: str, *, cluster=None):
        super().__init__(message)
        self.cluster = cluster
