from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from gamecard.core.logger import get_logger

log = get_logger("services.events")


class ResourceState(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


@dataclass(frozen=True)
class ResourceStatus:
    identifier: str
    state: ResourceState
    size: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    message: str


@dataclass(frozen=True)
class ResourceStatusEvent:
    statuses: tuple[ResourceStatus, ...]
    changed: ResourceStatus | None = None


@dataclass(frozen=True)
class ExportSucceeded:
    file_name: str
    method: str
    location: str
    size_bytes: int
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExportFailed:
    message: str
    error_type: str


ExportEvent = Union[ProgressEvent, ResourceStatusEvent, ExportSucceeded, ExportFailed]
Listener = Callable[[ExportEvent], None]


class ExportEvents:
    """Event stream of one export.

    Progress never goes backwards, resource statuses are replaced by
    identifier, and exactly one terminal event is emitted.
    """

    def __init__(self, listener: Listener | None = None):
        self._listener = listener
        self.history: list[ExportEvent] = []
        self._statuses: dict[str, ResourceStatus] = {}
        self._percent = 0
        self._terminal: ExportSucceeded | ExportFailed | None = None

    @classmethod
    def from_callbacks(
        cls,
        on_progress: Callable[[int, str], None] | None = None,
        on_resource_status: Callable[[list[ResourceStatus]], None] | None = None,
    ) -> ExportEvents:
        def _listener(event: ExportEvent) -> None:
            if isinstance(event, ProgressEvent) and on_progress is not None:
                on_progress(event.percent, event.message)
            elif isinstance(event, ResourceStatusEvent) and on_resource_status is not None:
                on_resource_status(list(event.statuses))

        return cls(_listener)

    @property
    def percent(self) -> int:
        return self._percent

    @property
    def statuses(self) -> tuple[ResourceStatus, ...]:
        return tuple(self._statuses.values())

    @property
    def terminal(self) -> ExportSucceeded | ExportFailed | None:
        return self._terminal

    def _emit(self, event: ExportEvent) -> None:
        self.history.append(event)
        if self._listener is None:
            return
        try:
            self._listener(event)
        except Exception:
            log.exception("export_listener_failed event=%s", type(event).__name__)

    def progress(self, percent: int, message: str) -> None:
        value = max(self._percent, min(100, int(percent)))
        self._percent = value
        self._emit(ProgressEvent(percent=value, message=message))

    def status(
        self,
        identifier: str,
        state: ResourceState,
        *,
        size: str | None = None,
        error: str | None = None,
    ) -> None:
        changed = ResourceStatus(identifier=identifier, state=state, size=size, error=error)
        self._statuses[identifier] = changed
        self._emit(ResourceStatusEvent(statuses=self.statuses, changed=changed))

    def succeeded(self, event: ExportSucceeded) -> None:
        if self._terminal is not None:
            log.warning("export_terminal_duplicate kept=%s", type(self._terminal).__name__)
            return
        self._terminal = event
        self._emit(event)

    def failed(self, message: str, error: BaseException | None = None) -> None:
        if self._terminal is not None:
            log.warning("export_terminal_duplicate kept=%s", type(self._terminal).__name__)
            return
        event = ExportFailed(message=message, error_type=type(error).__name__ if error else "ExportError")
        self._terminal = event
        self._emit(event)
