"""
PaymentRepository - MongoDB-backed payment store.

Concurrency model:
1. Every mutating operation runs inside a multi-document transaction
2. The transaction reads a per-client version document (client_ledgers)
3. On commit the version is compare-and-swapped; a mismatch means another
   writer touched the same client's records and the whole operation fails
   with ConcurrentModification (callers retry from a fresh snapshot)
4. A commit with an unknown result is retried on its own. The ledger
   document also keeps recent operation ids, so a caller retrying after a
   lost acknowledgement can see its operation already landed
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from payledger.models.base import utcnow
from payledger.models.payment import PaymentRecord
from payledger.utils.payment_validation import (
    ConcurrentModification,
    LedgerError,
    PaymentNotFound,
    StoreRejected,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)

WRITE_CONFLICT = 112
# Server is stepping down, shutting down or unreachable; the same request can succeed later
RETRYABLE_SERVER_CODES = {6, 7, 89, 91, 189, 10107, 11600, 11602, 13435, 13436}
COMMIT_ATTEMPTS = 3
# Recent operation ids kept on each client ledger document
OPERATION_HISTORY = 50


def translate_mongo_error(exc: PyMongoError) -> LedgerError:
    """Map driver errors onto ledger error kinds."""
    if isinstance(exc, DuplicateKeyError):
        return ConcurrentModification(f"Conflicting write: {exc}")
    if isinstance(exc, ConnectionFailure):
        return StoreUnavailable(f"MongoDB unavailable: {exc}")
    code = getattr(exc, "code", None)
    if exc.has_error_label("TransientTransactionError") or code == WRITE_CONFLICT:
        return ConcurrentModification(f"Transaction conflict: {exc}")
    if (
        exc.has_error_label("RetryableWriteError")
        or exc.has_error_label("UnknownTransactionCommitResult")
        or code in RETRYABLE_SERVER_CODES
    ):
        return StoreUnavailable(f"MongoDB unavailable: {exc}")
    if isinstance(exc, OperationFailure):
        # Bad value, failed document validation and the like: retrying cannot help
        return StoreRejected(f"MongoDB rejected the operation: {exc}")
    return StoreUnavailable(f"MongoDB error: {exc}")


def _to_object_id(record_id: str) -> Optional[ObjectId]:
    if not ObjectId.is_valid(record_id):
        return None
    return ObjectId(record_id)


class MongoLedgerTransaction:
    """One client's payment records inside a MongoDB transaction."""

    def __init__(
        self,
        store: "MongoPaymentStore",
        client_id: str,
        session,
        operation_id: Optional[str] = None
    ):
        self.store = store
        self.client_id = client_id
        self.session = session
        self.operation_id = operation_id
        self.version = 0
        self._operations: List[str] = []
        self._written = False
        self._snapshot: List[PaymentRecord] = []

    @property
    def ledger_key(self) -> str:
        return f"{self.store.tenant_id}:{self.client_id}"

    def _scope(self) -> Dict[str, Any]:
        return {"tenant_id": self.store.tenant_id, "client_id": self.client_id}

    async def begin(self) -> None:
        ledger = await self.store.ledgers.find_one({"_id": self.ledger_key}, session=self.session)
        self.version = ledger["version"] if ledger else 0
        self._operations = (ledger or {}).get("operations", [])

        docs = await self.store.collection.find(self._scope(), session=self.session).to_list(None)
        self._snapshot = [PaymentRecord.from_document(doc) for doc in docs]

    async def list(self) -> List[PaymentRecord]:
        return list(self._snapshot)

    async def applied(self, operation_id: str) -> bool:
        return operation_id in self._operations

    async def create(self, record: PaymentRecord) -> str:
        doc = record.to_document()
        if record.id is not None:
            doc["_id"] = ObjectId(record.id)
        self._written = True
        result = await self.store.collection.insert_one(doc, session=self.session)
        return str(result.inserted_id)

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        oid = _to_object_id(record_id)
        if oid is None:
            raise PaymentNotFound(f"Payment {record_id} not found")

        self._written = True
        changes = dict(fields)
        changes["updated_at"] = utcnow()
        if "document_id" in changes:
            changes["settled_to_document"] = changes["document_id"] is not None

        result = await self.store.collection.update_one(
            {"_id": oid, **self._scope()},
            {"$set": changes},
            session=self.session
        )
        if result.matched_count == 0:
            raise PaymentNotFound(f"Payment {record_id} not found")

    async def delete(self, record_id: str) -> None:
        oid = _to_object_id(record_id)
        if oid is None:
            raise PaymentNotFound(f"Payment {record_id} not found")

        self._written = True
        result = await self.store.collection.delete_one(
            {"_id": oid, **self._scope()},
            session=self.session
        )
        if result.deleted_count == 0:
            raise PaymentNotFound(f"Payment {record_id} not found")

    async def commit(self) -> None:
        """Compare-and-swap the client version taken at begin(), recording the operation id."""
        if not self._written:
            return
        change = {
            "$inc": {"version": 1},
            "$set": {**self._scope(), "updated_at": utcnow()}
        }
        if self.operation_id:
            change["$push"] = {
                "operations": {"$each": [self.operation_id], "$slice": -OPERATION_HISTORY}
            }
        try:
            result = await self.store.ledgers.update_one(
                {"_id": self.ledger_key, "version": self.version},
                change,
                upsert=True,
                session=self.session
            )
        except DuplicateKeyError:
            # Upsert collided with an existing ledger doc at another version
            raise ConcurrentModification(
                f"Payments for client {self.client_id} changed during the operation"
            )

        if result.matched_count == 0 and result.upserted_id is None:
            raise ConcurrentModification(
                f"Payments for client {self.client_id} changed during the operation"
            )


async def _commit_transaction(session, client_id: str) -> None:
    """
    Commit, retrying only the commit itself when the server may or may not
    have applied it. commitTransaction is idempotent for the same session.
    """
    for attempt in range(1, COMMIT_ATTEMPTS + 1):
        try:
            await session.commit_transaction()
            return
        except PyMongoError as exc:
            if attempt == COMMIT_ATTEMPTS or not exc.has_error_label("UnknownTransactionCommitResult"):
                raise
            logger.warning(
                "Commit for client %s has an unknown result (attempt %d/%d), retrying: %s",
                client_id, attempt, COMMIT_ATTEMPTS, exc
            )


class MongoPaymentStore:
    """Payment records for one tenant."""

    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id
        self.collection = db["payments"]
        self.ledgers = db["client_ledgers"]

    async def list(self, client_id: str) -> List[PaymentRecord]:
        try:
            docs = await self.collection.find({
                "tenant_id": self.tenant_id,
                "client_id": client_id
            }).sort("payment_date", 1).to_list(None)
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        return [PaymentRecord.from_document(doc) for doc in docs]

    async def get(self, record_id: str) -> Optional[PaymentRecord]:
        oid = _to_object_id(record_id)
        if oid is None:
            return None
        try:
            doc = await self.collection.find_one({"_id": oid, "tenant_id": self.tenant_id})
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        if doc:
            return PaymentRecord.from_document(doc)
        return None

    async def list_for_invoice(self, invoice_id: str) -> List[PaymentRecord]:
        try:
            docs = await self.collection.find({
                "tenant_id": self.tenant_id,
                "document_id": invoice_id
            }).to_list(None)
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        return [PaymentRecord.from_document(doc) for doc in docs]

    def new_id(self) -> str:
        return str(ObjectId())

    @asynccontextmanager
    async def transaction(self, client_id: str, operation_id: Optional[str] = None):
        try:
            async with await self.db.client.start_session() as session:
                # Ending the session aborts a transaction that was not committed
                session.start_transaction()
                txn = MongoLedgerTransaction(self, client_id, session, operation_id)
                await txn.begin()
                yield txn
                await txn.commit()
                await _commit_transaction(session, client_id)
        except PyMongoError as exc:
            logger.warning("Payment transaction for client %s failed: %s", client_id, exc)
            raise translate_mongo_error(exc) from exc

