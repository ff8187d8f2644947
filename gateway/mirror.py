import logging
from typing import Optional
from uuid import uuid4

from ledger.errors import ConfigError, LedgerServiceError, ProviderFailure
from ledger.models import Account, GenerateRequest, GenerateResponse

from .identity import Identity
from .metering import MeteringGateway
from .settings import DeploymentMode

logger = logging.getLogger(__name__)


class ClientMirror:
    """Local, non-authoritative view of one account's balance.

    ``confirmed_balance`` is the last value read from the store or returned by
    the gateway. ``projected_balance`` additionally subtracts spends that are
    still in flight and is for display only.
    """

    def __init__(
        self,
        account: Account,
        gateway: MeteringGateway,
        mode: DeploymentMode,
        token: Optional[str] = None,
        identity: Optional[Identity] = None,
    ):
        if mode == DeploymentMode.SECURE_BACKEND and not token:
            raise ConfigError("Secure-backend mirror needs a bearer token")
        if mode == DeploymentMode.LEGACY and identity is None:
            raise ConfigError("Legacy mirror needs the signed-in identity")
        if gateway.mode != mode:
            raise ConfigError(f"Mirror mode {mode.value} does not match gateway mode {gateway.mode.value}")

        self.account_id = account.id
        self.mode = mode
        self.confirmed_balance = account.balance
        self._gateway = gateway
        self._token = token
        self._identity = identity
        self._pending: dict[str, int] = {}

    @property
    def projected_balance(self) -> int:
        return self.confirmed_balance - sum(self._pending.values())

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def reconcile(self, account: Account) -> None:
        if account.id != self.account_id:
            raise ValueError(f"Cannot reconcile {self.account_id} with account {account.id}")
        self.confirmed_balance = account.balance
        self._pending.clear()

    def spend(self, request: GenerateRequest) -> GenerateResponse:
        expected_cost = self._gateway.resolver.resolve(request.feature, request.cost)
        projection_id = str(uuid4())
        self._pending[projection_id] = expected_cost

        try:
            if self.mode == DeploymentMode.SECURE_BACKEND:
                response = self._gateway.handle(f"Bearer {self._token}", request)
            else:
                response = self._gateway.handle_direct(self._identity, request)
        except ProviderFailure as e:
            # The charge committed; keep it projected until the next reconcile.
            self._pending[projection_id] = e.charged
            raise
        except LedgerServiceError:
            self._pending.pop(projection_id, None)
            raise

        self._pending.pop(projection_id, None)
        self.confirmed_balance = response.balance
        logger.debug("Mirror for %s confirmed balance %d", self.account_id, response.balance)
        return response
