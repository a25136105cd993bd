"""Chunked execution of one logical generation call.

Responsibilities:
- Decide between a single call and a chunked run from the header-adjusted budget.
- Run chunks strictly in order, isolating per-chunk failures.
- Persist every successful chunk result before the next chunk starts.
- Merge persisted chunk results and remove them only after the merged result
  (and the requested output file) has been written, or hand them to the caller
  when it persists the final result itself.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Iterable
from uuid import uuid4

from ..config import PipelineSettings
from ..errors import PersistenceError, ProviderError, RetryExhaustedError, SchemaViolationError
from ..io.storage import read_json, write_json_atomic
from ..llm.invokers import InvocationRequest, Invoker, validate_required_fields
from ..models.datatypes import InvocationResult
from ..telemetry.logger import log_event
from ..text.chunking import ChunkSplitter
from .merger import ResultMerger

_CHUNK_FAILURES = (ProviderError, RetryExhaustedError, SchemaViolationError)


def _default_token() -> str:
    return uuid4().hex[:12]


class ChunkOrchestrator:
    """Run one header/input pair through the invoker stack, chunking when needed."""

    def __init__(
        self,
        invoker: Invoker,
        *,
        tmp_dir: Path,
        settings: PipelineSettings | None = None,
        splitter: ChunkSplitter | None = None,
        merger: ResultMerger | None = None,
        token_factory: Callable[[], str] = _default_token,
    ) -> None:
        self.invoker = invoker
        self.tmp_dir = tmp_dir
        self.settings = settings or PipelineSettings()
        self.splitter = splitter or ChunkSplitter()
        self.merger = merger or ResultMerger()
        self.token_factory = token_factory

    def available_chars(self, header: str) -> int:
        """Return the per-call input budget left after the (capped) header."""

        budget = self.settings.chunk_size_chars - min(len(header), self.settings.max_header_chars)
        return max(budget, 1)

    async def process(
        self,
        header: str,
        input_text: str,
        *,
        output_path: Path | None = None,
        keep_artifacts: bool = False,
    ) -> InvocationResult:
        """Return the parsed (and, for chunked runs, merged) result for `input_text`.

        With `keep_artifacts`, chunk artifacts stay on disk and are listed in
        `InvocationResult.artifacts`; call `cleanup` once the final result is durable.

        Raises:
            RetryExhaustedError: If every chunk of a chunked run failed.
            PersistenceError: If a chunk artifact or the output file cannot be written.
        """

        budget = self.available_chars(header)
        if not input_text or len(input_text) <= budget:
            document = await self._invoke(header, input_text)
            if output_path is not None:
                write_json_atomic(output_path, document)
            return InvocationResult(
                document=document,
                items=self.merger.flatten([document]),
            )

        chunks = self.splitter.split(input_text, budget)
        return await self._process_chunks(
            header, chunks, output_path=output_path, keep_artifacts=keep_artifacts
        )

    async def _invoke(self, header: str, input_text: str) -> dict:
        document = await self.invoker.invoke(InvocationRequest(header=header, input_text=input_text))
        return validate_required_fields(document, self.settings.required_fields)

    async def _process_chunks(
        self,
        header: str,
        chunks: list[str],
        *,
        output_path: Path | None,
        keep_artifacts: bool,
    ) -> InvocationResult:
        total = len(chunks)
        token = self.token_factory()
        log_event("INFO", "chunking", "start", chunks=total, input_chars=sum(map(len, chunks)))

        artifacts: list[Path] = []
        failed = 0
        last_error: BaseException | None = None
        for index, chunk in enumerate(chunks, start=1):
            try:
                document = await self._invoke(header, chunk)
            except _CHUNK_FAILURES as exc:
                failed += 1
                last_error = exc
                log_event(
                    "WARNING",
                    "chunking",
                    "chunk-failed",
                    chunk=index,
                    chunks=total,
                    error_type=type(exc).__name__,
                )
                continue
            artifact = self.tmp_dir / f"_chunk_{index}_of_{total}_{token}.json"
            write_json_atomic(artifact, document)
            artifacts.append(artifact)
            log_event("DEBUG", "chunking", "chunk-saved", chunk=index, chunks=total)

        if not artifacts:
            raise RetryExhaustedError(
                f"All {total} chunks failed: {last_error}",
                attempts=total,
                last_error=last_error,
            ) from last_error

        items = self.merger.merge(self._read_artifact(path) for path in artifacts)
        document = {"items": items}
        if output_path is not None:
            write_json_atomic(output_path, document)
        if not keep_artifacts:
            self._remove_artifacts(artifacts)

        log_event(
            "INFO",
            "chunking",
            "complete",
            chunks=total,
            failed_chunks=failed,
            items=len(items),
        )
        return InvocationResult(
            document=document,
            items=items,
            chunk_count=total,
            failed_chunks=failed,
            artifacts=tuple(artifacts) if keep_artifacts else (),
        )

    def cleanup(self, result: InvocationResult) -> None:
        """Remove the chunk artifacts kept for `result`."""

        self._remove_artifacts(result.artifacts)

    @staticmethod
    def _read_artifact(path: Path) -> object:
        try:
            return read_json(path)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(
                f"Chunk artifact `{path}` could not be read back: {exc}", path=path
            ) from exc

    @staticmethod
    def _remove_artifacts(artifacts: Iterable[Path]) -> None:
        for path in artifacts:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log_event("WARNING", "chunking", "cleanup-failed", path=path.name, error=exc)
