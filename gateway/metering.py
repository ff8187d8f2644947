"""
Metering gateway: the single path every paid generation goes through.

verify identity -> price the feature -> atomic check-and-deduct -> provider.

The provider is only called after the deduction has committed. When the
provider then fails, the charge stands and ``ProviderFailure`` reports it;
credits currently pay for the attempt, not for the result.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from grants.milestones import exact_milestone_bonus
from ledger.errors import ConfigError, LedgerServiceError, ProviderFailure
from ledger.models import GenerateRequest, GenerateResponse, LedgerEntry
from ledger.service import LedgerService

from .costs import CostQuote, FeatureCostResolver
from .identity import Identity, IdentityVerifier
from .provider import GenerationProvider
from .settings import DeploymentMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Charge:
    quote: CostQuote
    entry: LedgerEntry


class MeteringGateway:
    def __init__(
        self,
        *,
        verifier: IdentityVerifier,
        resolver: FeatureCostResolver,
        service: LedgerService,
        provider: GenerationProvider,
        mode: DeploymentMode = DeploymentMode.SECURE_BACKEND,
    ):
        self.verifier = verifier
        self.resolver = resolver
        self.service = service
        self.provider = provider
        self.mode = mode

    def handle(self, authorization: Optional[str], request: GenerateRequest) -> GenerateResponse:
        """Server-side entrypoint for secure-backend deployments."""
        identity = self.verifier.verify_header(authorization)
        if self.mode != DeploymentMode.SECURE_BACKEND:
            raise ConfigError("Metering endpoint is disabled in legacy deployment mode")
        return self._run(identity, request, method="secure-backend")

    def handle_direct(self, identity: Identity, request: GenerateRequest) -> GenerateResponse:
        """Client-side path for legacy deployments without a trusted server."""
        if self.mode != DeploymentMode.LEGACY:
            raise ConfigError("Direct client deduction is disabled in secure-backend deployment mode")
        return self._run(identity, request, method="legacy-client")

    def charge(self, identity: Identity, request: GenerateRequest, method: str) -> Charge:
        quote = self.resolver.quote(request.feature, request.cost)
        try:
            entry = self.service.deduct(
                identity.account_id,
                quote.cost,
                feature=request.feature,
                actor=identity.account_id,
                request_id=request.request_id,
                method=method,
            )
        except LedgerServiceError as e:
            logger.warning("Rejected %s for %s: %s", request.feature, identity.account_id, e.kind)
            raise
        return Charge(quote=quote, entry=entry)

    def invoke_provider(self, request: GenerateRequest, charge: Charge) -> dict:
        try:
            return self.provider.generate(request.model, request.contents, request.config)
        except Exception as e:
            logger.error(
                "Provider failed for %s after charging %d credits (entry %s): %s",
                charge.entry.account_id, charge.quote.cost, charge.entry.id, e,
            )
            message = str(e) if isinstance(e, ProviderFailure) else f"AI Generation Failed: {e}"
            raise ProviderFailure(
                f"{message}. {charge.quote.cost} credits were charged and not refunded",
                charged=charge.quote.cost,
                entry_id=charge.entry.id,
            ) from e

    def _run(self, identity: Identity, request: GenerateRequest, method: str) -> GenerateResponse:
        charge = self.charge(identity, request, method)
        output = self.invoke_provider(request, charge)
        generation = charge.entry.metadata.get("generation", 0)
        return GenerateResponse(
            feature=request.feature,
            cost=charge.quote.cost,
            balance=charge.entry.balance_after,
            entry_id=charge.entry.id,
            generation=generation,
            milestone_bonus=exact_milestone_bonus(generation),
            output=output,
        )
