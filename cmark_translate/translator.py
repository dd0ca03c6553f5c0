"""High-level orchestration for document translation."""

from __future__ import annotations

import html
import logging
import pathlib
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .batcher import BatchBuilder
from .configuration import Settings
from .decoder import StructuralDecoder
from .documents import (
    BaseDocumentHandler,
    describe_root,
    detect_handler,
    iter_supported_files,
)
from .encoder import StructuralEncoder, escape_text
from .errors import (
    AbortRequested,
    CmarkTranslateError,
    DocumentFormatError,
    ErrorCategory,
    ErrorRecord,
    GatewayError,
    InvalidRequest,
    MalformedTranslationResponse,
    OverwriteRefusedError,
    TransientServiceError,
    UnitTooLarge,
    UnsupportedNodeKind,
)
from .policy import ErrorPolicy
from .providers import TranslationGateway
from .structures import Batch, Element, TranslationUnit

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


@dataclass
class TranslationStats:
    """Counters collected while translating the trees of one document."""

    total_units: int = 0
    translated_units: int = 0
    passthrough_roots: int = 0
    total_batches: int = 0


@dataclass
class TranslationSummary:
    """Report returned after processing a document."""

    input_path: pathlib.Path
    output_path: pathlib.Path
    document_type: str
    status: str
    total_units: int
    translated_units: int
    passthrough_roots: int
    total_batches: int
    provider_name: str
    target_language: str
    source_language: str | None
    elapsed_seconds: float
    fallbacks: List[ErrorRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def fallback_units(self) -> int:
        return len(self.fallbacks)


class DocumentTranslator:
    """Encodes, batches, dispatches and splices the trees of one document.

    Only the gateway calls run on worker threads. Encoding, decoding and
    splicing happen on the calling thread as batches complete; every unit owns
    a distinct tree position, so completion order does not matter.
    """

    def __init__(
        self,
        *,
        gateway: TranslationGateway,
        settings: Settings,
        target_language: str,
        source_language: str | None,
        policy: ErrorPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.target_language = target_language
        self.source_language = source_language
        self.policy = policy
        self.concurrency = settings.CONCURRENCY
        self.max_retries = settings.MAX_RETRIES
        self.retry_backoff = list(settings.RETRY_BACKOFF)
        self.batch_builder = BatchBuilder(settings.MAX_BATCH_CHARS, settings.MAX_BATCH_UNITS)
        self.decoder = StructuralDecoder(translate_alt_text=settings.TRANSLATE_ALT_TEXT)
        self.stats = TranslationStats()
        self._sleep = sleep

    # --- Encoding ----------------------------------------------------------

    def encode(
        self,
        trees: Sequence[Tuple[Element, str]],
        stats: TranslationStats,
    ) -> List[TranslationUnit]:
        encoder = StructuralEncoder(translate_alt_text=self.settings.TRANSLATE_ALT_TEXT)
        units: List[TranslationUnit] = []
        for tree, prefix in trees:
            try:
                roots = list(encoder.iter_roots(tree))
            except UnsupportedNodeKind as exc:
                self.policy.handle_error(ErrorCategory.ENCODING, str(exc), location=prefix or None)
                continue
            for path, root in roots:
                location = prefix or describe_root(root, path)
                try:
                    unit = encoder.encode_root(tree, path, location=location)
                except UnsupportedNodeKind as exc:
                    self.policy.handle_error(ErrorCategory.ENCODING, str(exc), location=location)
                    continue
                if unit is None:
                    stats.passthrough_roots += 1
                    continue
                units.append(unit)
        stats.total_units = len(units)
        return units

    def plan_batches(self, units: Sequence[TranslationUnit]) -> List[Batch]:
        ready: List[TranslationUnit] = []
        for unit in units:
            try:
                self.batch_builder.check(unit)
            except UnitTooLarge as exc:
                self.policy.handle_error(
                    ErrorCategory.BATCHING,
                    str(exc),
                    location=unit.location,
                    unit_id=unit.unit_id,
                )
                continue
            ready.append(unit)
        return self.batch_builder.build(ready)

    # --- Dispatch ----------------------------------------------------------

    def translate_trees(self, trees: Sequence[Tuple[Element, str]]) -> TranslationStats:
        """Translate every translatable root of the given trees in place."""

        stats = self.stats
        units = self.encode(trees, stats)
        batches = self.plan_batches(units)
        stats.total_batches = len(batches)
        logger.info(
            "Prepared %d units (%d passthrough roots) in %d batches.",
            len(units),
            stats.passthrough_roots,
            len(batches),
        )

        def on_result(batch: Batch, texts: List[str]) -> None:
            stats.translated_units += self._apply_batch(batch, texts)

        self._dispatch(batches, on_result)
        return stats

    def _dispatch(
        self,
        batches: Sequence[Batch],
        on_result: Callable[[Batch, List[str]], None],
    ) -> None:
        """Run batches with at most `concurrency` in flight, handling results as they finish.

        After the first fatal error nothing new is submitted; in-flight batches
        drain and the error is raised once they are done.
        """

        queue = iter(batches)
        pending: Dict[Future, Batch] = {}
        fatal: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:

            def fill() -> None:
                while fatal is None and len(pending) < self.concurrency:
                    batch = next(queue, None)
                    if batch is None:
                        return
                    pending[executor.submit(self._translate_batch, batch)] = batch

            fill()
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    batch = pending.pop(future)
                    try:
                        texts = future.result()
                    except GatewayError as exc:
                        logger.error("Batch %d failed: %s", batch.batch_id, exc)
                        fatal = fatal or exc
                        continue
                    if fatal is not None:
                        continue
                    try:
                        on_result(batch, texts)
                    except AbortRequested as exc:
                        fatal = exc
                fill()

        if fatal is not None:
            raise fatal

    def _translate_batch(self, batch: Batch) -> List[str]:
        texts = self._call_gateway(batch.texts, label=f"batch {batch.batch_id}")
        if len(texts) != len(batch.units):
            raise InvalidRequest(
                f"Batch {batch.batch_id}: expected {len(batch.units)} translations, "
                f"received {len(texts)}."
            )
        logger.info(
            "Processed batch %d (%d units, %d chars).",
            batch.batch_id,
            len(batch.units),
            batch.size,
        )
        return texts

    def _call_gateway(self, texts: List[str], *, label: str) -> List[str]:
        attempt = 0
        while True:
            try:
                return self.gateway.translate(
                    texts,
                    source_language=self.source_language,
                    target_language=self.target_language,
                )
            except TransientServiceError as exc:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                wait_time = (
                    self.retry_backoff[min(attempt - 1, len(self.retry_backoff) - 1)]
                    if self.retry_backoff
                    else 0
                )
                logger.warning(
                    "Could not translate %s (attempt %d of %d: %s). Retrying in %.1fs...",
                    label,
                    attempt,
                    self.max_retries,
                    exc,
                    wait_time,
                )
                self._sleep(wait_time)

    def _apply_batch(self, batch: Batch, texts: List[str]) -> int:
        translated = 0
        for unit, text in zip(batch.units, texts):
            try:
                self.decoder.apply(unit, text)
            except MalformedTranslationResponse as exc:
                self.policy.handle_error(
                    ErrorCategory.REINSERTION,
                    str(exc),
                    location=unit.location,
                    unit_id=unit.unit_id,
                )
                continue
            translated += 1
        return translated

    # --- Plain strings -----------------------------------------------------

    def translate_plain(self, texts: Sequence[str]) -> List[str]:
        """Translate marker-free strings such as front matter values."""

        if not texts:
            return []
        escaped = [escape_text(text) for text in texts]
        translated = self._call_gateway(escaped, label="front matter")
        if len(translated) != len(texts):
            raise InvalidRequest(
                f"Expected {len(texts)} translations, received {len(translated)}."
            )
        return [html.unescape(text) for text in translated]


class TranslationRunner:
    """Coordinates extraction, translation, and reinsertion for one file."""

    def __init__(
        self,
        *,
        input_path: pathlib.Path,
        output_path: pathlib.Path,
        settings: Settings,
        gateway: TranslationGateway,
        target_language: str,
        source_language: str | None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.input_path = input_path
        self.output_path = output_path
        self.settings = settings
        self.gateway = gateway
        self.target_language = target_language
        self.source_language = source_language
        self.policy = ErrorPolicy(
            on_malformed=settings.ON_MALFORMED,
            on_unsupported=settings.ON_UNSUPPORTED,
        )
        self._sleep = sleep

    def run(self) -> TranslationSummary:
        start_time = time.time()
        document_type = self.input_path.suffix.lstrip(".").lower() or "unknown"
        translator = DocumentTranslator(
            gateway=self.gateway,
            settings=self.settings,
            target_language=self.target_language,
            source_language=self.source_language,
            policy=self.policy,
            sleep=self._sleep,
        )
        stats = translator.stats
        error: Optional[str] = None

        try:
            document_type, handler = detect_handler(
                self.input_path, escape_codes=self.settings.ESCAPE_SHORTCODES
            )
            self._translate(translator, handler)
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            handler.save(self.output_path)
        except (GatewayError, AbortRequested, DocumentFormatError) as exc:
            logger.error("Translation of %s failed: %s", self.input_path, exc)
            error = str(exc)

        if error is not None:
            status = STATUS_FAILED
        elif self.policy.fallbacks:
            status = STATUS_PARTIAL
        else:
            status = STATUS_SUCCESS

        return TranslationSummary(
            input_path=self.input_path,
            output_path=self.output_path,
            document_type=document_type,
            status=status,
            total_units=stats.total_units,
            translated_units=stats.translated_units,
            passthrough_roots=stats.passthrough_roots,
            total_batches=stats.total_batches,
            provider_name=self.gateway.name,
            target_language=self.target_language,
            source_language=self.source_language,
            elapsed_seconds=time.time() - start_time,
            fallbacks=self.policy.fallbacks,
            error=error,
        )

    def _translate(self, translator: DocumentTranslator, handler: BaseDocumentHandler) -> None:
        if self.settings.TRANSLATE_FRONT_MATTER:
            texts = handler.front_matter_texts()
            if texts:
                handler.apply_front_matter(translator.translate_plain(texts))
        translator.translate_trees(handler.trees())


def validate_paths(
    input_path: pathlib.Path,
    output_path: pathlib.Path,
    force_overwrite: bool,
) -> None:
    """Validate input/output path combinations and overwrite policy."""

    if not input_path.exists():
        raise FileNotFoundError(
            "Input file not found. Please provide a readable .md or .xlsx file."
        )
    if not input_path.is_file():
        raise CmarkTranslateError("Input path must be a file.")

    if input_path.resolve() == output_path.resolve():
        raise OverwriteRefusedError(
            "The output path matches the input document. Refusing to overwrite the source file."
        )

    if output_path.exists() and not force_overwrite:
        raise OverwriteRefusedError(
            "The output file already exists. Rename it or use the overwrite flag."
        )


def plan_directory(
    input_dir: pathlib.Path,
    output_dir: pathlib.Path,
) -> List[Tuple[pathlib.Path, pathlib.Path]]:
    """Pair every supported file below input_dir with its mirrored output path."""

    if input_dir.resolve() == output_dir.resolve():
        raise OverwriteRefusedError(
            "The output directory matches the input directory. Refusing to overwrite sources."
        )
    return [
        (path, output_dir / path.relative_to(input_dir))
        for path in iter_supported_files(input_dir)
    ]
