"""Generation pipeline coordinator.

State machine for one generation request:

    RECEIVED -> MODERATED -> PRICED -> DEBITED -> GENERATING -> SUCCEEDED
                                                             -> FAILED_REFUNDED

Moderation, the user rate limit and the funds check fail fast with
nothing to undo. Any failure after the debit is paired with exactly one
credit of the debited amount before the error reaches the caller.

The coordinator holds no persistent state of its own; it sequences the
ledger, the driver, the persister and the audit trail.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Optional
from uuid import uuid4

from app.models.audit_event import AuditEventKind
from app.models.generated_image import GeneratedImage, GenerationSource
from app.models.token_transaction import TransactionType
from app.schemas.generation import GenerationMode, GenerationRequest
from app.services.asset_storage import AssetStorage, AssetStorageError
from app.services.audit_trail import AuditTrail, request_fingerprint
from app.services.generation_driver import GenerationDriver, StoredAsset
from app.services.image_provider import ProviderError, ProviderErrorKind
from app.services.ledger import InsufficientTokensError, TokenLedger, UserLockRegistry
from app.services.moderation import moderate, sanitize_text
from app.services.pricing import price
from app.services.result_persister import ImageMetadata, PersistenceError, ResultPersister

logger = logging.getLogger(__name__)

# Debited requests still settling; held until done so callers can go away
_settling_tasks: set[asyncio.Task] = set()

MODE_LABELS = {
    GenerationMode.GENERATE: "Image generation",
    GenerationMode.TRANSFORM: "Image transformation",
    GenerationMode.VARIATION: "Image variations",
}


class PipelineState(str, enum.Enum):
    """Pipeline states.

    SUCCEEDED and FAILED_REFUNDED are terminal. REJECTED covers the
    fail-fast exits before any debit.
    """

    RECEIVED = "received"
    MODERATED = "moderated"
    PRICED = "priced"
    DEBITED = "debited"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED_REFUNDED = "failed_refunded"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset(
    {PipelineState.SUCCEEDED, PipelineState.FAILED_REFUNDED, PipelineState.REJECTED}
)


class GenerationErrorKind(str, enum.Enum):
    """Error kinds exposed to callers."""

    BLOCKED = "blocked"
    INSUFFICIENT_FUNDS = "insufficient-funds"
    RATE_LIMITED = "rate-limited"
    PROVIDER_ERROR = "provider-error"
    PERSISTENCE_ERROR = "persistence-error"


class GenerationError(Exception):
    """Base class for classified pipeline failures.

    ``message`` is safe to show to users; internal causes stay in the
    logs and the audit trail.
    """

    kind: ClassVar[GenerationErrorKind]
    status_code: int = 500

    def __init__(self, message: str, request_id: Optional[str] = None):
        self.message = message
        self.request_id = request_id
        super().__init__(message)

    @property
    def extra(self) -> dict[str, Any]:
        return {}

    def to_detail(self) -> dict[str, Any]:
        """Structured payload for HTTP responses."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "request_id": self.request_id,
            "extra": self.extra,
        }


class ContentBlockedError(GenerationError):
    kind = GenerationErrorKind.BLOCKED
    status_code = 400


class InsufficientFundsError(GenerationError):
    kind = GenerationErrorKind.INSUFFICIENT_FUNDS
    status_code = 402

    def __init__(self, required: int, available: int, request_id: Optional[str] = None):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient tokens. Need {required} tokens, you have {available}",
            request_id,
        )

    @property
    def extra(self) -> dict[str, Any]:
        return {
            "required": self.required,
            "available": self.available,
            "shortfall": max(0, self.required - self.available),
        }


class RateLimitedError(GenerationError):
    kind = GenerationErrorKind.RATE_LIMITED
    status_code = 429

    def __init__(self, limit: int, window_minutes: int, request_id: Optional[str] = None):
        self.limit = limit
        self.window_minutes = window_minutes
        super().__init__(
            f"Generation limit reached: {limit} generations per {window_minutes} minutes. "
            "Please try again later.",
            request_id,
        )

    @property
    def extra(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "window_minutes": self.window_minutes,
            "retry_after": self.window_minutes * 60,
        }


class ProviderFailureError(GenerationError):
    kind = GenerationErrorKind.PROVIDER_ERROR

    MESSAGES: ClassVar[dict[ProviderErrorKind, str]] = {
        ProviderErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
        ProviderErrorKind.QUOTA_EXCEEDED: (
            "Image provider quota exceeded. Please try again later."
        ),
        ProviderErrorKind.OTHER: "Image generation failed. Please try again.",
    }
    STATUS_CODES: ClassVar[dict[ProviderErrorKind, int]] = {
        ProviderErrorKind.RATE_LIMITED: 429,
        ProviderErrorKind.QUOTA_EXCEEDED: 402,
        ProviderErrorKind.OTHER: 502,
    }

    def __init__(self, reason: ProviderErrorKind, request_id: Optional[str] = None):
        self.reason = reason
        self.status_code = self.STATUS_CODES[reason]
        super().__init__(self.MESSAGES[reason], request_id)

    @property
    def extra(self) -> dict[str, Any]:
        return {"reason": self.reason.value, "refunded": True}


class PersistenceFailureError(GenerationError):
    kind = GenerationErrorKind.PERSISTENCE_ERROR
    status_code = 500

    def __init__(self, request_id: Optional[str] = None):
        super().__init__("Failed to save the generated image. Please try again.", request_id)

    @property
    def extra(self) -> dict[str, Any]:
        return {"refunded": True}


@dataclass
class GenerationContext:
    """In-flight state of one request."""

    request_id: str
    fingerprint: str
    user_id: int
    request: GenerationRequest
    prompt: str
    caption: Optional[str]
    state: PipelineState = PipelineState.RECEIVED
    cost: int = 0

    def transition(self, state: PipelineState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(
                f"Generation {self.request_id} already finished in state {self.state.value}"
            )
        logger.info(
            f"Generation {self.request_id}: {self.state.value} -> {state.value}"
        )
        self.state = state


@dataclass
class GenerationOutcome:
    """Result of a successful pipeline run."""

    request_id: str
    mode: GenerationMode
    assets: list[StoredAsset]
    images: list[GeneratedImage]
    token_cost: int
    new_balance: int
    template_id: Optional[str] = None
    suggestion_id: Optional[str] = None
    generation_source: Optional[GenerationSource] = None
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def asset_urls(self) -> list[str]:
        return [asset.url for asset in self.assets]


class GenerationCoordinator:
    """Runs generation requests through the metered pipeline."""

    def __init__(
        self,
        session_factory,
        driver: GenerationDriver,
        storage: AssetStorage,
        rate_limit: int = 20,
        rate_window_minutes: int = 60,
        default_variation_count: int = 3,
        max_variation_count: int = 4,
        locks: Optional[UserLockRegistry] = None,
    ):
        """Initialize the coordinator.

        Args:
            session_factory: Callable returning an AsyncSession context
            driver: Generation driver (owns the provider client)
            storage: Asset storage used by the persister
            rate_limit: Successful generations allowed per window
            rate_window_minutes: Trailing window for the rate limit
            default_variation_count: Variations when the request sets none
            max_variation_count: Upper bound on requested variations
            locks: Per-user ledger lock registry
        """
        self.session_factory = session_factory
        self.driver = driver
        self.storage = storage
        self.rate_limit = rate_limit
        self.rate_window_minutes = rate_window_minutes
        self.default_variation_count = default_variation_count
        self.max_variation_count = max_variation_count
        self.locks = locks

    async def run(self, user_id: int, request: GenerationRequest) -> GenerationOutcome:
        """Process one generation request end to end.

        Args:
            user_id: Authenticated user id (trusted as given)
            request: Validated generation request

        Returns:
            GenerationOutcome on success

        Raises:
            ContentBlockedError: Moderation rejected the input
            RateLimitedError: User exceeded the generation limit
            InsufficientFundsError: Balance below the cost
            ProviderFailureError: Provider failed (tokens refunded)
            PersistenceFailureError: Storage failed (tokens refunded)
        """
        ctx = GenerationContext(
            request_id=uuid4().hex,
            fingerprint=request_fingerprint(
                user_id,
                request.mode.value,
                request.prompt,
                request.source_image,
                request.template_id,
            ),
            user_id=user_id,
            request=request,
            prompt=sanitize_text(request.prompt) or "",
            caption=sanitize_text(request.caption),
        )

        async with self.session_factory() as db:
            audit = AuditTrail(db)

            await audit.record(
                AuditEventKind.ATTEMPT,
                user_id,
                ctx.request_id,
                ctx.fingerprint,
                self._request_detail(ctx),
            )

            await self._moderate(ctx, audit)
            ctx.cost = self._price(ctx)

        # From the debit on, the request settles even if the caller goes away
        task = asyncio.ensure_future(self._debit_generate_and_settle(ctx))
        _settling_tasks.add(task)
        task.add_done_callback(_settled)
        return await asyncio.shield(task)

    async def _moderate(self, ctx: GenerationContext, audit: AuditTrail) -> None:
        result = moderate(ctx.prompt, ctx.caption)
        reason = result.reason

        if result.allowed and ctx.request.mode != GenerationMode.VARIATION and not ctx.prompt:
            reason = "Prompt is empty after removing markup"

        if reason:
            ctx.transition(PipelineState.REJECTED)
            await audit.record(
                AuditEventKind.BLOCKED,
                ctx.user_id,
                ctx.request_id,
                ctx.fingerprint,
                {"reason": reason, "matched_term": result.matched_term},
            )
            raise ContentBlockedError(reason, ctx.request_id)

        ctx.transition(PipelineState.MODERATED)

    def _price(self, ctx: GenerationContext) -> int:
        request = ctx.request
        cost = price(
            request.mode,
            style=request.style,
            platform=request.platform,
            size=request.size,
            template_cost_override=request.template_cost,
        )
        ctx.transition(PipelineState.PRICED)
        logger.info(f"Generation {ctx.request_id}: priced at {cost} tokens")
        return cost

    async def _check_rate_limit(self, ctx: GenerationContext, audit: AuditTrail) -> None:
        since = datetime.now(timezone.utc) - timedelta(minutes=self.rate_window_minutes)
        recent = await audit.count_recent(ctx.user_id, AuditEventKind.SUCCEEDED, since)

        if recent >= self.rate_limit:
            ctx.transition(PipelineState.REJECTED)
            await audit.record(
                AuditEventKind.RATE_LIMITED,
                ctx.user_id,
                ctx.request_id,
                ctx.fingerprint,
                {
                    "recent_generations": recent,
                    "limit": self.rate_limit,
                    "window_minutes": self.rate_window_minutes,
                },
            )
            raise RateLimitedError(self.rate_limit, self.rate_window_minutes, ctx.request_id)

    async def _debit(self, ctx: GenerationContext, ledger: TokenLedger, audit: AuditTrail) -> int:
        request = ctx.request
        description = f"{MODE_LABELS[request.mode]} - {request.style or 'default'} style"
        if request.template_id:
            description += " (Template)"

        try:
            balance = await ledger.debit(ctx.user_id, ctx.cost, description)
        except InsufficientTokensError as e:
            ctx.transition(PipelineState.REJECTED)
            await audit.record(
                AuditEventKind.INSUFFICIENT_FUNDS,
                ctx.user_id,
                ctx.request_id,
                ctx.fingerprint,
                {"required": e.required, "available": e.available},
            )
            raise InsufficientFundsError(e.required, e.available, ctx.request_id) from e

        ctx.transition(PipelineState.DEBITED)
        return balance

    async def _debit_generate_and_settle(self, ctx: GenerationContext) -> GenerationOutcome:
        async with self.session_factory() as db:
            audit = AuditTrail(db)
            ledger = TokenLedger(db, self.locks)
            persister = ResultPersister(db, self.storage)

            await self._check_rate_limit(ctx, audit)
            balance_after_debit = await self._debit(ctx, ledger, audit)

            ctx.transition(PipelineState.GENERATING)
            try:
                assets = await self._drive(ctx)
                images = await persister.persist_many(ctx.user_id, assets, self._metadata(ctx))
            except Exception as exc:
                failure = self._classify_failure(exc, ctx)
                await self._refund(ctx, ledger, audit, failure, exc)
                raise failure from exc

            ctx.transition(PipelineState.SUCCEEDED)
            await audit.record(
                AuditEventKind.SUCCEEDED,
                ctx.user_id,
                ctx.request_id,
                ctx.fingerprint,
                {
                    "mode": ctx.request.mode.value,
                    "token_cost": ctx.cost,
                    "asset_count": len(assets),
                    "asset_bytes": sum(asset.size_bytes for asset in assets),
                    "asset_urls": [asset.url for asset in assets],
                    "size": ctx.request.size,
                },
            )
            new_balance = await ledger.balance_of(ctx.user_id)

        logger.info(
            f"Generation {ctx.request_id} succeeded: {len(assets)} asset(s), "
            f"{ctx.cost} tokens, balance {balance_after_debit} -> {new_balance}"
        )
        return GenerationOutcome(
            request_id=ctx.request_id,
            mode=ctx.request.mode,
            assets=assets,
            images=images,
            token_cost=ctx.cost,
            new_balance=new_balance,
            template_id=ctx.request.template_id,
            suggestion_id=ctx.request.suggestion_id,
            generation_source=ctx.request.generation_source,
        )

    async def _drive(self, ctx: GenerationContext) -> list[StoredAsset]:
        request = ctx.request

        if request.mode == GenerationMode.TRANSFORM:
            asset = await self.driver.transform(
                request.source_image, ctx.prompt, request.style, size=request.size
            )
            return [asset]

        if request.mode == GenerationMode.VARIATION:
            count = min(
                request.variation_count or self.default_variation_count,
                self.max_variation_count,
            )
            return await self.driver.create_variations(request.source_image, count)

        asset = await self.driver.generate_from_text(
            ctx.prompt, size=request.size, style=request.style, quality=request.quality
        )
        return [asset]

    def _metadata(self, ctx: GenerationContext) -> ImageMetadata:
        request = ctx.request
        return ImageMetadata(
            prompt=ctx.prompt or MODE_LABELS[request.mode],
            style=request.style or "realistic",
            platform=request.platform or "instagram",
            size=request.size,
            caption=ctx.caption,
            original_asset_url=(
                request.source_image if request.mode != GenerationMode.GENERATE else None
            ),
            template_id=request.template_id,
            suggestion_id=request.suggestion_id,
            generation_source=request.generation_source,
        )

    def _classify_failure(self, exc: Exception, ctx: GenerationContext) -> GenerationError:
        if isinstance(exc, ProviderError):
            logger.warning(
                f"Generation {ctx.request_id}: provider failed "
                f"(kind={exc.kind.value}, status={exc.raw_status}): {exc.message}"
            )
            return ProviderFailureError(exc.kind, ctx.request_id)

        if isinstance(exc, (AssetStorageError, PersistenceError)):
            logger.warning(f"Generation {ctx.request_id}: persistence failed: {exc}")
            return PersistenceFailureError(ctx.request_id)

        logger.exception(f"Generation {ctx.request_id}: unexpected failure")
        return ProviderFailureError(ProviderErrorKind.OTHER, ctx.request_id)

    async def _refund(
        self,
        ctx: GenerationContext,
        ledger: TokenLedger,
        audit: AuditTrail,
        failure: GenerationError,
        cause: Exception,
    ) -> None:
        failure_detail = {
            "error": failure.kind.value,
            "extra": failure.extra,
            "cause": f"{cause.__class__.__name__}: {cause}",
        }

        try:
            balance = await ledger.credit(
                ctx.user_id,
                ctx.cost,
                f"Refund: {MODE_LABELS[ctx.request.mode].lower()} failed ({failure.kind.value})",
                TransactionType.EARNED,
            )
        except Exception as refund_exc:
            logger.exception(
                f"Generation {ctx.request_id}: refund of {ctx.cost} tokens "
                f"to user {ctx.user_id} failed"
            )
            await audit.record(
                AuditEventKind.FAILED,
                ctx.user_id,
                ctx.request_id,
                ctx.fingerprint,
                {**failure_detail, "refund_error": str(refund_exc)},
            )
            raise

        ctx.transition(PipelineState.FAILED_REFUNDED)
        await audit.record(
            AuditEventKind.REFUNDED,
            ctx.user_id,
            ctx.request_id,
            ctx.fingerprint,
            {"amount": ctx.cost, "new_balance": balance},
        )
        await audit.record(
            AuditEventKind.FAILED,
            ctx.user_id,
            ctx.request_id,
            ctx.fingerprint,
            failure_detail,
        )

    @staticmethod
    def _request_detail(ctx: GenerationContext) -> dict[str, Any]:
        request = ctx.request
        return {
            "mode": request.mode.value,
            "style": request.style,
            "platform": request.platform,
            "size": request.size,
            "template_id": request.template_id,
            "suggestion_id": request.suggestion_id,
            "generation_source": (
                request.generation_source.value if request.generation_source else None
            ),
            "has_source_image": bool(request.source_image),
        }


def _settled(task: asyncio.Task) -> None:
    _settling_tasks.discard(task)
    if task.cancelled():
        return
    # Retrieve the outcome even when no caller is left to await it
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Settled generation ended with {exc.__class__.__name__}: {exc}")


async def drain_settling() -> None:
    """Wait for generations still settling after their callers went away."""
    if _settling_tasks:
        await asyncio.gather(*list(_settling_tasks), return_exceptions=True)
