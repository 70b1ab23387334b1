import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from payledger.models.base import utcnow
from payledger.models.invoice import InvoiceSnapshot, PaymentStatusUpdate
from payledger.repositories.payment_repo import translate_mongo_error
from payledger.utils.payment_validation import to_cents

logger = logging.getLogger(__name__)


def _id_filter(invoice_id: str) -> Dict[str, Any]:
    """Invoices may carry ObjectId or string ids depending on how they were created."""
    if ObjectId.is_valid(invoice_id):
        return {"_id": {"$in": [ObjectId(invoice_id), invoice_id]}}
    return {"_id": invoice_id}


def to_snapshot(doc: Dict[str, Any]) -> InvoiceSnapshot:
    doc = dict(doc)
    doc["_id"] = str(doc["_id"])
    # Older documents embed the client instead of referencing it
    if not doc.get("client_id"):
        doc["client_id"] = (doc.get("client") or {}).get("id", "")
    if "total_cents" not in doc:
        doc["total_cents"] = to_cents(doc.get("total"))
    if "doc_type" not in doc and "type" in doc:
        doc["doc_type"] = doc["type"]
    if "issued_at" not in doc and "created_at" in doc:
        doc["issued_at"] = doc["created_at"]
    return InvoiceSnapshot(**doc)


class MongoInvoiceGateway:
    """Invoice documents for one tenant. Owned by the document service; read here."""

    def __init__(self, db: AsyncIOMotorDatabase, tenant_id: str):
        self.db = db
        self.tenant_id = tenant_id
        self.collection = db["documents"]

    async def get_invoice(self, invoice_id: str) -> Optional[InvoiceSnapshot]:
        try:
            doc = await self.collection.find_one({**_id_filter(invoice_id), "tenant_id": self.tenant_id})
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        if doc:
            return to_snapshot(doc)
        return None

    async def list_for_client(self, client_id: str) -> List[InvoiceSnapshot]:
        try:
            # Older invoices only carry the embedded client.id
            docs = await self.collection.find({
                "tenant_id": self.tenant_id,
                "$or": [{"client_id": client_id}, {"client.id": client_id}]
            }).to_list(None)
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        return [to_snapshot(doc) for doc in docs]

    async def set_payment_status(self, invoice_id: str, update: PaymentStatusUpdate) -> None:
        try:
            await self.collection.update_one(
                {**_id_filter(invoice_id), "tenant_id": self.tenant_id},
                {
                    "$set": {
                        "total_paid_cents": update.total_paid_cents,
                        "outstanding_cents": update.outstanding_cents,
                        "paid": update.paid,
                        "payment_status": update.payment_status.value,
                        "last_payment_date": update.last_payment_date,
                        "updated_at": utcnow()
                    }
                }
            )
        except PyMongoError as exc:
            raise translate_mongo_error(exc) from exc
        logger.debug("Invoice %s payment status set to %s", invoice_id, update.payment_status.value)
