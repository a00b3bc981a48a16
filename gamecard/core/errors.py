"""Error taxonomy of the export pipeline.

Resource- and layer-scoped errors are absorbed inside the pipeline and only
degrade the output. ``EncodingError`` and an exhausted delivery chain end the
export with a single terminal failure.
"""

from __future__ import annotations


class ExportError(Exception):
    """Base class; ``message`` is safe to show to an end user."""

    def __init__(self, message: str, *, cause: BaseException | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ResourceFetchError(ExportError):
    def __init__(self, url: str, message: str, *, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.url = url


class BindingUnresolved(ExportError):
    """Marker for a field reference that fell back to literal content. Never raised by the pipeline."""

    def __init__(self, element_id: str, reference: str):
        super().__init__(f"no data for {reference!r} on element {element_id!r}")
        self.element_id = element_id
        self.reference = reference


class RasterizationError(ExportError):
    def __init__(self, layer: str, message: str, *, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.layer = layer


class EncodingError(ExportError):
    pass


class DeliveryError(ExportError):
    def __init__(self, method: str, message: str, *, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.method = method
