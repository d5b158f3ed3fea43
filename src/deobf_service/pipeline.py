import asyncio
import contextlib
import enum
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from deobf_service.config import Settings
from deobf_service.errors import InsufficientBalance, PipelineError, StorageError, TransformError, ValidationError
from deobf_service.ledger import TokenLedger
from deobf_service.links import MAX_SCAN_BYTES, scan
from deobf_service.transformer import ExternalTransformer
from deobf_service.workspace import Workspace

logger = logging.getLogger(__name__)

MAX_SOURCE_BYTES = 25 * 1024 * 1024


class JobState(str, enum.Enum):
    VALIDATING = "validating"
    AWAITING_BALANCE = "awaiting_balance"
    DOWNLOADING = "downloading"
    TRANSFORMING = "transforming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED})


@dataclass
class Job:
    request_id: str
    owner_user_id: str
    source_filename: str
    source_size: int
    state: JobState = JobState.VALIDATING
    workspace: Workspace | None = None
    charged: bool = False
    error: str | None = None
    history: list[JobState] = field(default_factory=list)


@dataclass
class TransformResult:
    request_id: str
    output_bytes: bytes
    original_size: int
    output_size: int
    diagnostic_output: str
    links: set[str]
    output_filename: str
    elapsed_sec: float
    charged: bool
    remaining_balance: int


def failure_code(exc: BaseException) -> str:
    if isinstance(exc, PipelineError):
        return exc.code
    if isinstance(exc, asyncio.CancelledError):
        return "CANCELLED"
    return "UNKNOWN_ERROR"


def result_filename(safe_name: str, suffix: str, ts_ms: int) -> str:
    return f"deobfuscated_{Path(safe_name).stem}_{ts_ms}{suffix}"


class JobPipeline:
    def __init__(
        self,
        ledger: TokenLedger,
        transformer: ExternalTransformer,
        work_dir: str | Path,
        allowed_extensions: Iterable[str] = (".lua", ".txt"),
        max_source_bytes: int = MAX_SOURCE_BYTES,
        link_scan_max_bytes: int = MAX_SCAN_BYTES,
        timeout_sec: float | None = None,
        max_concurrent: int | None = None,
        output_suffix: str = ".lua",
    ) -> None:
        self.ledger = ledger
        self.transformer = transformer
        self.work_dir = Path(work_dir)
        self.allowed_extensions = [x.lower() for x in allowed_extensions]
        self.max_source_bytes = max_source_bytes
        self.link_scan_max_bytes = link_scan_max_bytes
        self.timeout_sec = timeout_sec
        self.output_suffix = output_suffix
        self._slots = asyncio.Semaphore(max_concurrent) if max_concurrent else None

    @classmethod
    def from_settings(cls, ledger: TokenLedger, transformer: ExternalTransformer, cfg: Settings) -> "JobPipeline":
        return cls(
            ledger,
            transformer,
            work_dir=cfg.work_dir,
            allowed_extensions=cfg.extension_list,
            max_source_bytes=cfg.max_file_bytes,
            link_scan_max_bytes=cfg.link_scan_max_bytes,
            timeout_sec=cfg.transform_timeout_sec,
            max_concurrent=cfg.max_concurrent_transforms,
            output_suffix=cfg.output_suffix,
        )

    def validate(self, filename: str, size: int) -> None:
        ext = Path(filename).suffix.lower()
        if ext not in self.allowed_extensions:
            raise ValidationError(
                f"File type {ext or 'unknown'} is not accepted (accepted: {', '.join(self.allowed_extensions)})"
            )
        if size > self.max_source_bytes:
            raise ValidationError(
                f"File size {size / 1024 / 1024:.2f} MB exceeds the "
                f"{self.max_source_bytes / 1024 / 1024:.0f} MB limit"
            )

    @staticmethod
    def _advance(job: Job, state: JobState, on_state: Callable[[Job], None] | None) -> None:
        if job.state in TERMINAL_STATES:
            raise RuntimeError(f"job {job.request_id} already {job.state.value}")
        job.state = state
        job.history.append(state)
        logger.debug("[%s] -> %s", job.request_id, state.value)
        if on_state:
            on_state(job)

    def _fail(self, job: Job, exc: BaseException, on_state: Callable[[Job], None] | None) -> None:
        job.error = str(exc) or failure_code(exc)
        if job.state not in TERMINAL_STATES:
            self._advance(job, JobState.FAILED, on_state)

    async def _charge(self, job: Job) -> bool:
        # The debit runs in a worker thread that cancellation cannot stop, so
        # wait for its outcome before letting the cancel through.
        debit = asyncio.ensure_future(asyncio.to_thread(self.ledger.try_debit, job.owner_user_id))
        try:
            job.charged = await asyncio.shield(debit)
        except asyncio.CancelledError:
            job.charged = await debit
            raise
        return job.charged

    async def _refund(self, job: Job) -> None:
        try:
            await asyncio.to_thread(self.ledger.grant, job.owner_user_id, 1)
        except StorageError:
            logger.exception("[%s] Refund for user %s failed", job.request_id, job.owner_user_id)
            return
        job.charged = False
        logger.warning("[%s] Refunded the token charged to user %s", job.request_id, job.owner_user_id)

    async def submit(
        self,
        owner_user_id: str,
        source_bytes: bytes,
        filename: str,
        on_state: Callable[[Job], None] | None = None,
    ) -> TransformResult:
        started = time.monotonic()
        job = Job(
            request_id=uuid4().hex,
            owner_user_id=owner_user_id,
            source_filename=filename,
            source_size=len(source_bytes),
        )
        self._advance(job, JobState.VALIDATING, on_state)
        logger.info(
            "[%s] Processing request from user %s for %s (%.2f KB)",
            job.request_id,
            owner_user_id,
            filename,
            job.source_size / 1024,
        )

        try:
            self.validate(filename, job.source_size)

            self._advance(job, JobState.AWAITING_BALANCE, on_state)
            await asyncio.to_thread(self.ledger.claim_daily, owner_user_id)
            balance = await asyncio.to_thread(self.ledger.get_balance, owner_user_id)
            if balance < 1:
                raise InsufficientBalance(f"User {owner_user_id} has no tokens left")

            try:
                ws = job.workspace = Workspace.create(self.work_dir, job.request_id, filename, self.output_suffix)
            except OSError as exc:
                raise TransformError(f"cannot create workspace: {exc}") from exc

            self._advance(job, JobState.DOWNLOADING, on_state)
            try:
                ws.input_path.write_bytes(source_bytes)
                original_size = ws.input_path.stat().st_size
            except OSError as exc:
                raise TransformError(f"cannot materialize input: {exc}") from exc

            self._advance(job, JobState.TRANSFORMING, on_state)
            slot = self._slots if self._slots is not None else contextlib.nullcontext()
            async with slot:
                diagnostic = await self.transformer.invoke(
                    str(ws.input_path), str(ws.output_path), timeout=self.timeout_sec
                )
            try:
                output = ws.output_path.read_bytes()
            except OSError as exc:
                raise TransformError(f"cannot read tool output: {exc}") from exc

            links = scan(output, self.link_scan_max_bytes)
            charged = await self._charge(job)
            if not charged:
                logger.warning(
                    "[%s] Debit refused for user %s after a successful transform, delivering uncharged",
                    job.request_id,
                    owner_user_id,
                )
            remaining = await asyncio.to_thread(self.ledger.get_balance, owner_user_id)

            elapsed = time.monotonic() - started
            self._advance(job, JobState.SUCCEEDED, on_state)
            logger.info("[%s] Completed in %.2fs", job.request_id, elapsed)
            return TransformResult(
                request_id=job.request_id,
                output_bytes=output,
                original_size=original_size,
                output_size=len(output),
                diagnostic_output=diagnostic,
                links=links,
                output_filename=result_filename(ws.safe_name, self.output_suffix, int(time.time() * 1000)),
                elapsed_sec=elapsed,
                charged=charged,
                remaining_balance=remaining,
            )
        except PipelineError as exc:
            logger.warning("[%s] Failed with %s: %s", job.request_id, exc.code, exc)
            self._fail(job, exc, on_state)
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected pipeline failure", job.request_id)
            self._fail(job, exc, on_state)
            raise
        except asyncio.CancelledError as exc:
            logger.warning("[%s] Cancelled by caller", job.request_id)
            if job.charged:
                await self._refund(job)
            self._fail(job, exc, on_state)
            raise
        finally:
            if job.workspace is not None:
                job.workspace.cleanup()
