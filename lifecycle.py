"""
Request / commission lifecycle engine.

RecyclingRequest:  pending -> approved -> accepted -> completed
                   pending | approved -> rejected
Transaction:       pending -> paid -> confirmed
                   paid -> disputed

A Transaction is created in the same atomic unit that moves its request into
``accepted``. A recycler holding any ``pending`` or ``paid`` transaction may
not accept further work until an admin confirms the payment.

Status fields change only through this module; every change is a
compare-and-swap against the status the operation observed.
"""
import logging
import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError

from database import GATES, REQUESTS, TRANSACTIONS
from errors import (
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    PaymentPendingError,
    ValidationError,
)
from identity import RECYCLER, SUBMITTER_ROLES, Identity, is_admin
from schemas import RecyclingRequest, RequestDetails, Transaction

logger = logging.getLogger(__name__)

DEFAULT_COMMISSION_RATE = 8
CODE_ATTEMPTS = 3
NEWEST_FIRST = [("createdAt", DESCENDING), ("_id", DESCENDING)]


class RequestStatus:
    PENDING = "pending"
    APPROVED = "approved"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    REJECTED = "rejected"

    ALL = (PENDING, APPROVED, ACCEPTED, COMPLETED, REJECTED)


class TransactionStatus:
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"

    ALL = (PENDING, PAID, CONFIRMED, DISPUTED)
    OUTSTANDING = (PENDING, PAID)


REQUEST_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.ACCEPTED, RequestStatus.REJECTED},
    RequestStatus.ACCEPTED: {RequestStatus.COMPLETED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.REJECTED: set(),
}

TRANSACTION_TRANSITIONS = {
    TransactionStatus.PENDING: {TransactionStatus.PAID},
    TransactionStatus.PAID: {TransactionStatus.CONFIRMED, TransactionStatus.DISPUTED},
    TransactionStatus.CONFIRMED: set(),
    TransactionStatus.DISPUTED: set(),
}

APPROVE = "approve"
REJECT = "reject"


def assert_transition(table: Dict[str, set], old: str, new: str) -> None:
    if new not in table.get(old, set()):
        raise InvalidStateError(f"Illegal transition: {old} -> {new}")


def compute_commission(order_amount, rate: int) -> Decimal:
    """Commission owed on an order, exact to the input's precision."""
    return Decimal(order_amount) * Decimal(rate) / Decimal(100)


def generate_unique_code() -> str:
    return "E2R-" + uuid.uuid4().hex[:12].upper()


def generate_secret_code() -> str:
    return secrets.token_hex(4).upper()


def request_view(doc: dict) -> dict:
    """A request as any permitted reader may see it: never with the secret code."""
    view = dict(doc)
    view.pop("secretCode", None)
    return view


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{field}: {err.get('msg')}")
    return "; ".join(parts)


class LifecycleEngine:
    def __init__(self, store, commission_rate: int = DEFAULT_COMMISSION_RATE,
                 clock: Optional[Callable[[], datetime]] = None):
        if not isinstance(commission_rate, int) or not 0 <= commission_rate <= 100:
            raise ValueError(f"commission_rate must be an integer percent, got {commission_rate!r}")
        self.store = store
        self.commission_rate = commission_rate
        self.now = clock or (lambda: datetime.now(timezone.utc))

    # ----------------------
    # Helpers
    # ----------------------

    @staticmethod
    def _require_admin(caller: Identity) -> None:
        if not is_admin(caller):
            raise ForbiddenError("Admin access required")

    @staticmethod
    def _require_recycler(caller: Identity) -> Identity:
        if is_admin(caller) or caller.role != RECYCLER:
            raise ForbiddenError("Only recyclers can perform this action")
        return caller

    def _request_doc(self, request_id: str) -> dict:
        doc = self.store.get(REQUESTS, request_id)
        if doc is None:
            raise NotFoundError("Recycling request not found")
        return doc

    def _transaction_doc(self, transaction_id: str) -> dict:
        doc = self.store.get(TRANSACTIONS, transaction_id)
        if doc is None:
            raise NotFoundError("Transaction not found")
        return doc

    def _transition(self, collection: str, doc: dict, source: str, target: str,
                    patch: Dict[str, Any], table: Dict[str, set]) -> dict:
        current = doc["status"]
        if current != source:
            raise InvalidStateError(f"Cannot move from '{current}' to '{target}'; expected status '{source}'")
        assert_transition(table, source, target)

        changes = dict(patch)
        changes["status"] = target
        updated = self.store.update_if_status(collection, doc["id"], source, changes)
        if updated is None:
            # Lost the race: someone moved it first
            latest = self.store.get(collection, doc["id"])
            latest_status = latest["status"] if latest else "deleted"
            raise InvalidStateError(f"Cannot move from '{latest_status}' to '{target}'; expected status '{source}'")

        logger.info("%s %s: %s -> %s", collection, doc["id"], source, target)
        return updated

    def _outstanding(self, recycler_id: str) -> List[dict]:
        return self.store.query(
            TRANSACTIONS,
            {"recycler": recycler_id, "status": {"$in": list(TransactionStatus.OUTSTANDING)}},
            sort=NEWEST_FIRST,
        )

    # ----------------------
    # Request lifecycle
    # ----------------------

    def submit(self, caller: Identity, details: Union[dict, RequestDetails]) -> dict:
        if is_admin(caller) or caller.role not in SUBMITTER_ROLES:
            raise ForbiddenError("Only individual, business or educational users can submit requests")

        try:
            if isinstance(details, RequestDetails):
                details = details.model_dump()
            validated = RequestDetails.model_validate(details)
        except PydanticValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc

        now = self.now()
        for attempt in range(1, CODE_ATTEMPTS + 1):
            document = RecyclingRequest(
                **validated.model_dump(),
                user=caller.id,
                uniqueCode=generate_unique_code(),
                secretCode=generate_secret_code(),
                status=RequestStatus.PENDING,
                createdAt=now,
                updatedAt=now,
            )
            try:
                created = self.store.create(REQUESTS, document.model_dump())
                break
            except DuplicateKeyError:
                logger.warning("Unique code collision on attempt %d, regenerating", attempt)
                if attempt == CODE_ATTEMPTS:
                    raise

        logger.info("Request %s (%s) submitted by %s", created["id"], created["uniqueCode"], caller.id)
        return request_view(created)

    def review(self, caller: Identity, request_id: str, decision: str, notes: Optional[str] = None) -> dict:
        self._require_admin(caller)
        if decision not in (APPROVE, REJECT):
            raise ValidationError("decision must be 'approve' or 'reject'")

        request = self._request_doc(request_id)
        target = RequestStatus.APPROVED if decision == APPROVE else RequestStatus.REJECTED
        now = self.now()
        patch = {"reviewedAt": now, "updatedAt": now}
        if notes is not None:
            patch["adminNotes"] = notes
        updated = self._transition(REQUESTS, request, RequestStatus.PENDING, target, patch, REQUEST_TRANSITIONS)
        return request_view(updated)

    def withdraw(self, caller: Identity, request_id: str, notes: Optional[str] = None) -> dict:
        """Reject an approved request that no recycler has accepted yet."""
        self._require_admin(caller)
        request = self._request_doc(request_id)
        now = self.now()
        patch = {"updatedAt": now}
        if notes is not None:
            patch["adminNotes"] = notes
        updated = self._transition(
            REQUESTS, request, RequestStatus.APPROVED, RequestStatus.REJECTED, patch, REQUEST_TRANSITIONS
        )
        return request_view(updated)

    def accept(self, caller: Identity, request_id: str) -> Dict[str, dict]:
        recycler = self._require_recycler(caller)

        with self.store.atomic():
            # Conflicting writers on the same gate serialize accepts per recycler
            self.store.bump(GATES, recycler.id)

            outstanding = self._outstanding(recycler.id)
            if outstanding:
                logger.warning(
                    "Recycler %s blocked from accepting %s: %d commission payment(s) outstanding",
                    recycler.id, request_id, len(outstanding),
                )
                raise PaymentPendingError(len(outstanding))

            request = self._request_doc(request_id)
            now = self.now()
            accepted = self._transition(
                REQUESTS,
                request,
                RequestStatus.APPROVED,
                RequestStatus.ACCEPTED,
                {"acceptedBy": recycler.id, "acceptedAt": now, "updatedAt": now},
                REQUEST_TRANSITIONS,
            )

            order_amount = Decimal(accepted["estimatedPrice"])
            transaction = Transaction(
                request=accepted["id"],
                recycler=recycler.id,
                orderAmount=order_amount,
                commissionRate=self.commission_rate,
                commissionAmount=compute_commission(order_amount, self.commission_rate),
                status=TransactionStatus.PENDING,
                createdAt=now,
                updatedAt=now,
            )
            created = self.store.create(TRANSACTIONS, transaction.model_dump())

        logger.info(
            "Recycler %s accepted request %s; commission %s owed on transaction %s",
            recycler.id, accepted["id"], created["commissionAmount"], created["id"],
        )
        return {"request": request_view(accepted), "transaction": created}

    def complete(self, caller: Identity, request_id: str) -> dict:
        request = self._request_doc(request_id)
        if not is_admin(caller) and request.get("acceptedBy") != caller.id:
            raise ForbiddenError("Only the accepting recycler or an admin can complete this request")

        now = self.now()
        updated = self._transition(
            REQUESTS,
            request,
            RequestStatus.ACCEPTED,
            RequestStatus.COMPLETED,
            {"completedAt": now, "updatedAt": now},
            REQUEST_TRANSITIONS,
        )
        return request_view(updated)

    def get_secret_code(self, caller: Identity, request_id: str) -> str:
        request = self._request_doc(request_id)
        if is_admin(caller) or request.get("acceptedBy") != caller.id:
            raise ForbiddenError("Only the accepting recycler can view the secret code")

        transactions = self.store.query(TRANSACTIONS, {"request": request["id"]})
        if not transactions or transactions[0]["status"] != TransactionStatus.CONFIRMED:
            raise ForbiddenError("The secret code is available once your commission payment is confirmed")
        return request["secretCode"]

    # ----------------------
    # Request reads
    # ----------------------

    def get_request(self, caller: Identity, request_id: str) -> dict:
        request = self._request_doc(request_id)
        if is_admin(caller):
            return request_view(request)

        visible = (
            request["user"] == caller.id
            or request.get("acceptedBy") == caller.id
            or (caller.role == RECYCLER and request["status"] == RequestStatus.APPROVED)
        )
        if not visible:
            raise NotFoundError("Recycling request not found")
        return request_view(request)

    def list_requests_for_owner(self, caller: Identity) -> List[dict]:
        if is_admin(caller):
            raise ForbiddenError("Admins have no requests of their own")
        docs = self.store.query(REQUESTS, {"user": caller.id}, sort=NEWEST_FIRST)
        return [request_view(d) for d in docs]

    def list_available(self, caller: Identity) -> List[dict]:
        self._require_recycler(caller)
        docs = self.store.query(REQUESTS, {"status": RequestStatus.APPROVED}, sort=NEWEST_FIRST)
        return [request_view(d) for d in docs]

    def list_accepted(self, caller: Identity) -> List[dict]:
        recycler = self._require_recycler(caller)
        docs = self.store.query(REQUESTS, {"acceptedBy": recycler.id}, sort=NEWEST_FIRST)
        return [request_view(d) for d in docs]

    def list_requests(self, caller: Identity, status: Optional[str] = None) -> List[dict]:
        self._require_admin(caller)
        filter = {}
        if status is not None:
            if status not in RequestStatus.ALL:
                raise ValidationError(f"Unknown request status '{status}'")
            filter["status"] = status
        return [request_view(d) for d in self.store.query(REQUESTS, filter, sort=NEWEST_FIRST)]

    # ----------------------
    # Commission transactions
    # ----------------------

    def pay(self, caller: Identity, transaction_id: str, method: str, reference: Optional[str] = None) -> dict:
        recycler = self._require_recycler(caller)
        method = (method or "").strip()
        if not method:
            raise ValidationError("paymentMethod is required")

        transaction = self.store.get(TRANSACTIONS, transaction_id)
        if transaction is None or transaction["recycler"] != recycler.id:
            raise NotFoundError("Transaction not found")

        now = self.now()
        patch = {
            "paymentMethod": method,
            "paymentReference": (reference or "").strip() or None,
            "paymentDate": now,
            "updatedAt": now,
        }
        return self._transition(
            TRANSACTIONS, transaction, TransactionStatus.PENDING, TransactionStatus.PAID, patch, TRANSACTION_TRANSITIONS
        )

    def confirm(self, caller: Identity, transaction_id: str, confirmed: bool, notes: Optional[str] = None) -> dict:
        self._require_admin(caller)
        transaction = self._transaction_doc(transaction_id)

        now = self.now()
        patch = {"updatedAt": now}
        if notes is not None:
            patch["adminNotes"] = notes
        if confirmed:
            target = TransactionStatus.CONFIRMED
            patch["confirmedBy"] = caller.id
            patch["confirmedAt"] = now
        else:
            target = TransactionStatus.DISPUTED
        return self._transition(
            TRANSACTIONS, transaction, TransactionStatus.PAID, target, patch, TRANSACTION_TRANSITIONS
        )

    def list_pending_for_recycler(self, caller: Identity, recycler_id: Optional[str] = None) -> List[dict]:
        if is_admin(caller):
            if not recycler_id:
                raise ValidationError("recycler_id is required")
            return self._outstanding(recycler_id)

        recycler = self._require_recycler(caller)
        if recycler_id is not None and recycler_id != recycler.id:
            raise NotFoundError("Recycler not found")
        return self._outstanding(recycler.id)

    def list_transactions(self, caller: Identity, status: Optional[str] = None) -> List[dict]:
        filter = {}
        if status is not None:
            if status not in TransactionStatus.ALL:
                raise ValidationError(f"Unknown transaction status '{status}'")
            filter["status"] = status
        if not is_admin(caller):
            filter["recycler"] = self._require_recycler(caller).id
        return self.store.query(TRANSACTIONS, filter, sort=NEWEST_FIRST)

    def commission_summary(self, caller: Identity) -> Dict[str, Any]:
        self._require_admin(caller)
        summary = {status: {"count": 0, "commission": Decimal(0)} for status in TransactionStatus.ALL}
        for tx in self.store.query(TRANSACTIONS, {}):
            bucket = summary.setdefault(tx["status"], {"count": 0, "commission": Decimal(0)})
            bucket["count"] += 1
            bucket["commission"] += Decimal(tx["commissionAmount"])
        return {
            "byStatus": summary,
            "collected": summary[TransactionStatus.CONFIRMED]["commission"],
            "outstanding": sum(
                (summary[s]["commission"] for s in TransactionStatus.OUTSTANDING), Decimal(0)
            ),
        }
