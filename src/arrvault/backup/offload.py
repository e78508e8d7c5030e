"""
Background execution of backup operations.

Key derivation takes hundreds of milliseconds by design, so exports and
imports run in a worker pool rather than on the caller's thread or event
loop. Requests and results are frozen dataclasses of plain values; with the
default process pool they are pickled across the boundary, so the worker
never sees caller objects.

Usage:
    with BackupWorker() as worker:
        future = worker.submit_export(records, active_ids, password)
        result = future.result()

    # or from a coroutine
    result = await worker.import_backup(data, password, existing)

There is no cancellation. A caller that no longer wants a result simply
ignores it when it arrives.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from arrvault.backup.manager import (
    BackupManager,
    ExportResult,
    ImportResult,
    ValidationResult,
)
from arrvault.models import ActiveIds, InstanceRecord

logger = logging.getLogger(__name__)

EXECUTOR_KINDS = ("process", "thread")

_R = TypeVar("_R")


@dataclass(frozen=True)
class WorkerOptions:
    """Manager settings sent along with every request."""

    kdf_iterations: int | None = None
    allow_legacy_v1: bool = False


@dataclass(frozen=True)
class ExportRequest:
    records: tuple[InstanceRecord, ...]
    active_ids: ActiveIds
    password: str = field(repr=False)
    options: WorkerOptions = field(default_factory=WorkerOptions)


@dataclass(frozen=True)
class ImportRequest:
    data: bytes = field(repr=False)
    password: str = field(repr=False)
    existing_records: tuple[InstanceRecord, ...] = ()
    options: WorkerOptions = field(default_factory=WorkerOptions)


@dataclass(frozen=True)
class ValidateRequest:
    data: bytes = field(repr=False)
    password: str = field(repr=False)
    options: WorkerOptions = field(default_factory=WorkerOptions)


def _manager(options: WorkerOptions) -> BackupManager:
    return BackupManager(
        kdf_iterations=options.kdf_iterations,
        allow_legacy_v1=options.allow_legacy_v1,
    )


def run_export(request: ExportRequest) -> ExportResult:
    """Worker entry point for exports."""
    return _manager(request.options).export_backup(
        request.records, request.active_ids, request.password
    )


def run_import(request: ImportRequest) -> ImportResult:
    """Worker entry point for imports."""
    return _manager(request.options).import_backup(
        request.data, request.password, request.existing_records
    )


def run_validate(request: ValidateRequest) -> ValidationResult:
    """Worker entry point for validation."""
    return _manager(request.options).validate_backup(request.data, request.password)


class BackupWorker:
    """
    Runs backup operations off the caller's execution path.

    A single worker runs one operation at a time. The pool is created on
    first use and released by shutdown() or by leaving the context manager.

    Attributes:
        options: Settings passed to the manager in the worker.
        executor_kind: "process" (separate interpreter) or "thread".
    """

    def __init__(
        self,
        kdf_iterations: int | None = None,
        allow_legacy_v1: bool = False,
        executor: str = "process",
    ) -> None:
        if executor not in EXECUTOR_KINDS:
            raise ValueError(
                f"Unknown executor: {executor}. Must be one of: {', '.join(EXECUTOR_KINDS)}"
            )
        self.options = WorkerOptions(
            kdf_iterations=kdf_iterations,
            allow_legacy_v1=allow_legacy_v1,
        )
        self.executor_kind = executor
        self._executor: Executor | None = None

    def __enter__(self) -> BackupWorker:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    def submit_export(
        self,
        records: Iterable[InstanceRecord],
        active_ids: ActiveIds | None,
        password: str,
    ) -> Future[ExportResult]:
        """Dispatch an export and return its future."""
        request = ExportRequest(
            records=tuple(records),
            active_ids=active_ids or ActiveIds(),
            password=password,
            options=self.options,
        )
        return self._submit(run_export, request)

    def submit_import(
        self,
        data: bytes,
        password: str,
        existing_records: Iterable[InstanceRecord] = (),
    ) -> Future[ImportResult]:
        """Dispatch an import and return its future."""
        request = ImportRequest(
            data=bytes(data),
            password=password,
            existing_records=tuple(existing_records),
            options=self.options,
        )
        return self._submit(run_import, request)

    def submit_validate(self, data: bytes, password: str) -> Future[ValidationResult]:
        """Dispatch a validation and return its future."""
        request = ValidateRequest(data=bytes(data), password=password, options=self.options)
        return self._submit(run_validate, request)

    async def export_backup(
        self,
        records: Iterable[InstanceRecord],
        active_ids: ActiveIds | None,
        password: str,
    ) -> ExportResult:
        """Export without blocking the running event loop."""
        return await asyncio.wrap_future(self.submit_export(records, active_ids, password))

    async def import_backup(
        self,
        data: bytes,
        password: str,
        existing_records: Iterable[InstanceRecord] = (),
    ) -> ImportResult:
        """Import without blocking the running event loop."""
        return await asyncio.wrap_future(
            self.submit_import(data, password, existing_records)
        )

    async def validate_backup(self, data: bytes, password: str) -> ValidationResult:
        """Validate without blocking the running event loop."""
        return await asyncio.wrap_future(self.submit_validate(data, password))

    def shutdown(self, wait: bool = True) -> None:
        """Release the worker pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _submit(self, fn: Callable[[Any], _R], request: Any) -> Future[_R]:
        logger.debug("Dispatching %s to %s worker", fn.__name__, self.executor_kind)
        return self._get_executor().submit(fn, request)

    def _get_executor(self) -> Executor:
        if self._executor is None:
            if self.executor_kind == "process":
                self._executor = ProcessPoolExecutor(max_workers=1)
            else:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="arrvault-backup"
                )
        return self._executor
