import logging
from datetime import datetime, timedelta
from typing import Optional

from gateway.identity import Identity, require_admin
from ledger.errors import (
    AlreadyClaimed,
    AlreadyReferred,
    InvalidAmount,
    InvalidCode,
    SelfReferral,
    UnknownPackage,
)
from ledger.models import Account, CreditPack, EntryType, GrantResponse, LedgerEntry
from ledger.service import LedgerService
from ledger.store import utcnow

from .milestones import milestone_for

logger = logging.getLogger(__name__)

DAILY_CLAIM_CREDITS = 1
DAILY_CLAIM_WINDOW = timedelta(hours=24)
REFERRAL_BONUS = 10

DAILY_REASON = "Daily Check-in"
REFERRAL_CLAIMED_REASON = "Referral Bonus (Claimed)"
REFERRAL_FRIEND_JOINED_REASON = "Referral Bonus (Friend Joined)"
ADMIN_GRANT_REASON = "Admin Grant"

REFUND_WINDOW = timedelta(hours=24)
SUPPORT_REFUND_REASON = "Support Refund"


class GrantEngine:
    """Non-spend balance increases.

    Each grant checks its claim marker and pays out inside one store
    transaction, so a failed or replayed claim leaves no partial state.
    """

    def __init__(self, service: LedgerService):
        self.service = service
        self.storage = service.storage

    def daily_claim(self, identity: Identity, now: Optional[datetime] = None) -> GrantResponse:
        now = now or utcnow()
        with self.storage.transaction() as txn:
            account = txn.require_account(identity.account_id)
            last_claim: Optional[datetime] = account["last_claim_at"]
            if last_claim is not None and now - last_claim < DAILY_CLAIM_WINDOW:
                next_claim = last_claim + DAILY_CLAIM_WINDOW
                raise AlreadyClaimed(f"Daily credit already claimed. Next claim after {next_claim.isoformat()}")

            entry = txn.apply(identity.account_id, DAILY_CLAIM_CREDITS, DAILY_REASON, actor=identity.account_id, now=now)
            account["last_claim_at"] = now

        logger.info("Daily claim paid to %s", identity.account_id)
        return self._response(account, [entry], DAILY_CLAIM_CREDITS, "Daily credit claimed")

    def referral_claim(self, identity: Identity, code: str) -> GrantResponse:
        code = code.strip().upper()
        claimer_id = identity.account_id

        with self.storage.transaction() as txn:
            claimer = txn.require_account(claimer_id)
            if claimer["referred_by"] is not None:
                raise AlreadyReferred("A referral code has already been claimed on this account")

            owner_id = txn.resolve_referral_code(code)
            if owner_id is None:
                raise InvalidCode(f"Referral code {code} does not exist")
            if owner_id == claimer_id:
                raise SelfReferral("You cannot use your own referral code")

            if not txn.check_and_set(claimer_id, "referred_by", None, owner_id):
                raise AlreadyReferred("A referral code has already been claimed on this account")

            owner = txn.require_account(owner_id)
            owner["referral_count"] += 1
            claimer_entry = txn.apply(
                claimer_id, REFERRAL_BONUS, REFERRAL_CLAIMED_REASON, actor=claimer_id,
                metadata={"referrer": owner_id, "code": code},
            )
            owner_entry = txn.apply(
                owner_id, REFERRAL_BONUS, REFERRAL_FRIEND_JOINED_REASON, actor=claimer_id,
                metadata={"referred": claimer_id, "code": code},
            )

        logger.info("Referral %s claimed by %s (owner %s)", code, claimer_id, owner_id)
        return GrantResponse(
            account=Account(**claimer),
            ledger_entries=[LedgerEntry(**claimer_entry), LedgerEntry(**owner_entry)],
            awarded=REFERRAL_BONUS,
            message=f"Referral claimed: +{REFERRAL_BONUS} credits",
        )

    def milestone_claim(self, identity: Identity, generation_count: Optional[int] = None) -> GrantResponse:
        with self.storage.transaction() as txn:
            account = txn.require_account(identity.account_id)
            # Never beyond what the gateway has recorded.
            count = account["lifetime_generations"]
            if generation_count is not None:
                count = min(generation_count, count)
            milestone = milestone_for(count)
            if milestone is None or milestone.threshold <= account["highest_milestone_claimed"]:
                return GrantResponse(account=Account(**account), awarded=0, message="No new milestone reached")

            entry = txn.apply(
                identity.account_id, milestone.bonus,
                f"Milestone Bonus ({milestone.threshold} generations)",
                actor=identity.account_id,
                metadata={"threshold": milestone.threshold},
            )
            account["highest_milestone_claimed"] = milestone.threshold

        logger.info("Milestone %d paid to %s", milestone.threshold, identity.account_id)
        return self._response(
            account, [entry], milestone.bonus,
            f"Milestone reached: +{milestone.bonus} credits",
        )

    def admin_grant(self, admin: Identity, target_account_id: str, amount: int, reason: Optional[str] = None) -> GrantResponse:
        require_admin(admin)
        if amount <= 0:
            raise InvalidAmount(f"Grant amount must be positive, got {amount}")
        reason = reason or ADMIN_GRANT_REASON

        with self.storage.transaction() as txn:
            entry = txn.apply(
                target_account_id, amount, reason, actor=admin.account_id,
                metadata={"granted_by": admin.account_id},
            )
            txn.audit(admin.account_id, "grant_credits", target_account_id, amount, details=reason)
            account = txn.require_account(target_account_id)

        logger.info("Admin %s granted %d credits to %s", admin.account_id, amount, target_account_id)
        return self._response(account, [entry], amount, f"Granted {amount} credits")

    def package_grant(self, admin: Identity, target_account_id: str, pack_name: str) -> GrantResponse:
        require_admin(admin)
        pack = self.find_pack(pack_name)

        with self.storage.transaction() as txn:
            entry = self._credit_pack(txn, target_account_id, pack, actor=admin.account_id, reason=f"Package: {pack.name}")
            txn.audit(admin.account_id, "grant_package", target_account_id, pack.total_credits, details=pack.name)
            account = txn.require_account(target_account_id)

        logger.info("Admin %s granted package %s to %s", admin.account_id, pack.name, target_account_id)
        return self._response(account, [entry], pack.total_credits, f"Granted package {pack.name}")

    def refund_claim(self, identity: Identity, cost: int, reason: str = "", now: Optional[datetime] = None) -> GrantResponse:
        """Self-service refund of the caller's most recent generation.

        Allowed once per 24 hours and never more than that generation cost.
        Anything else goes through ``support_refund``.
        """
        if cost <= 0:
            raise InvalidAmount(f"Refund amount must be positive, got {cost}")
        now = now or utcnow()
        account_id = identity.account_id

        with self.storage.transaction() as txn:
            account = txn.require_account(account_id)
            last_refund: Optional[datetime] = account["last_refund_at"]
            if last_refund is not None and now - last_refund < REFUND_WINDOW:
                next_refund = last_refund + REFUND_WINDOW
                raise AlreadyClaimed(
                    f"Automated refund already used. Next refund after {next_refund.isoformat()}; "
                    "contact support for a review"
                )

            entries = txn.entries_for(account_id)
            debits = [e for e in entries if e["entry_type"] == EntryType.DEBIT]
            if not debits:
                raise InvalidAmount("There is no generation to refund")
            debit = debits[-1]
            if any(e["metadata"].get("refunded_entry") == debit["id"] for e in entries):
                raise AlreadyClaimed("The last generation was already refunded")
            if cost > -debit["delta"]:
                raise InvalidAmount(f"Refund of {cost} exceeds the {-debit['delta']} credits charged")

            feature = debit["metadata"].get("feature", debit["reason"])
            entry = txn.apply(
                account_id, cost, f"Refund: {feature}", actor=account_id, now=now,
                metadata={"refunded_entry": debit["id"], "note": reason},
            )
            account["last_refund_at"] = now

        logger.info("Automated refund of %d credits to %s for entry %s", cost, account_id, debit["id"])
        return self._response(account, [entry], cost, f"{cost} credits have been refunded to your account.")

    def support_refund(self, admin: Identity, target_account_id: str, amount: int, reference: str = "") -> GrantResponse:
        require_admin(admin)
        if amount <= 0:
            raise InvalidAmount(f"Refund amount must be positive, got {amount}")

        with self.storage.transaction() as txn:
            entry = txn.apply(
                target_account_id, amount, SUPPORT_REFUND_REASON, actor=admin.account_id,
                metadata={"granted_by": admin.account_id, "reference": reference},
            )
            txn.audit(admin.account_id, "support_refund", target_account_id, amount, details=reference)
            account = txn.require_account(target_account_id)

        logger.info("Admin %s refunded %d credits to %s (%s)", admin.account_id, amount, target_account_id, reference)
        return self._response(account, [entry], amount, f"Refunded {amount} credits")

    def purchase(
        self,
        account_id: str,
        payment_id: str,
        pack_name: str,
        credits: int,
        price: int = 0,
        is_plan: bool = False,
    ) -> Optional[LedgerEntry]:
        """Credit a captured payment once. Returns None for a replayed payment id."""
        if credits <= 0:
            raise InvalidAmount(f"Purchased credits must be positive, got {credits}")
        pack = CreditPack(name=pack_name, credits=credits, price=price, is_plan=is_plan)

        with self.storage.transaction() as txn:
            if txn.payment_processed(payment_id):
                logger.info("Payment %s already processed", payment_id)
                return None
            reason = f"Purchase: {pack_name}" if is_plan else "Credit Refill"
            entry = self._credit_pack(
                txn, account_id, pack, actor="webhook", reason=reason,
                metadata={"payment_id": payment_id, "price_paid": price},
            )
            txn.record_payment(payment_id, {
                "payment_id": payment_id,
                "account_id": account_id,
                "pack_name": pack_name,
                "credits_added": credits,
                "amount_paid": price,
            })

        logger.info("Payment %s credited %d credits to %s", payment_id, credits, account_id)
        return LedgerEntry(**entry)

    def find_pack(self, pack_name: str) -> CreditPack:
        for pack in self.storage.get_app_config().credit_packs:
            if pack.name == pack_name:
                return pack
        raise UnknownPackage(f"Credit pack {pack_name} not found")

    def _credit_pack(self, txn, account_id: str, pack: CreditPack, actor: str, reason: str, metadata: Optional[dict] = None) -> dict:
        entry = txn.apply(
            account_id, pack.total_credits, reason, actor=actor,
            metadata={"pack": pack.name, **(metadata or {})},
        )
        if pack.is_plan:
            txn.require_account(account_id)["plan"] = pack.name
        return entry

    def _response(self, account: dict, entries: list[dict], awarded: int, message: str) -> GrantResponse:
        return GrantResponse(
            account=Account(**account),
            ledger_entries=[LedgerEntry(**e) for e in entries],
            awarded=awarded,
            message=message,
        )
