"""
Offline recovery jobs over the payments collection.

These run directly against MongoDB, outside the engine's per-client
transactions, because they must look across tenants. Each one bumps the
version of every client ledger it touches so in-flight engine operations
on those clients fail with a conflict and retry on fresh data.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Set, Tuple

from bson import ObjectId
from pydantic import BaseModel

from payledger.db.session import get_database
from payledger.models.base import utcnow
from payledger.models.payment import PaymentRecord, append_note
from payledger.repositories.invoice_repo import to_snapshot
from payledger.utils.payment_validation import to_cents

logger = logging.getLogger(__name__)


class MisattributedPayment(BaseModel):
    payment_id: str
    amount_cents: int
    document_id: str
    client_id: str
    current_tenant_id: str
    correct_tenant_id: str
    reference: str = ""


class MisattributionReport(BaseModel):
    tenant_id: str
    documents_scanned: int
    payments: List[MisattributedPayment] = []

    @property
    def total_cents(self) -> int:
        return sum(p.amount_cents for p in self.payments)


class ReconstructionReport(BaseModel):
    tenant_id: str
    dry_run: bool
    documents_scanned: int = 0
    documents_skipped: int = 0
    restored: List[PaymentRecord] = []

    @property
    def restored_cents(self) -> int:
        return sum(r.amount_cents for r in self.restored)

    @property
    def document_ids(self) -> List[str]:
        return sorted({r.document_id for r in self.restored if r.document_id})


def _legacy_date(*candidates: Any) -> datetime:
    for value in candidates:
        if isinstance(value, datetime):
            return value
    return utcnow()


async def _bump_ledgers(db, keys: Set[Tuple[str, str]]) -> None:
    for tenant_id, client_id in keys:
        await db.client_ledgers.update_one(
            {"_id": f"{tenant_id}:{client_id}"},
            {
                "$inc": {"version": 1},
                "$set": {"tenant_id": tenant_id, "client_id": client_id, "updated_at": utcnow()}
            },
            upsert=True
        )


class RecoveryService:
    @staticmethod
    async def find_misattributed_payments(tenant_id: str) -> MisattributionReport:
        """
        Find payments that point at one of tenant_id's invoices but are owned
        by another tenant.
        """
        db = await get_database()

        docs = await db.documents.find({"tenant_id": tenant_id}, {"_id": 1}).to_list(None)
        document_ids = [str(doc["_id"]) for doc in docs]

        found: List[MisattributedPayment] = []
        if document_ids:
            cursor = db.payments.find({
                "document_id": {"$in": document_ids},
                "tenant_id": {"$ne": tenant_id}
            })
            async for payment in cursor:
                found.append(MisattributedPayment(
                    payment_id=str(payment["_id"]),
                    amount_cents=payment.get("amount_cents", 0),
                    document_id=payment["document_id"],
                    client_id=payment.get("client_id", ""),
                    current_tenant_id=payment.get("tenant_id", ""),
                    correct_tenant_id=tenant_id,
                    reference=payment.get("reference", "")
                ))

        report = MisattributionReport(
            tenant_id=tenant_id,
            documents_scanned=len(document_ids),
            payments=found
        )
        if found:
            logger.warning(
                "Found %d misattributed payment(s) totalling %d for tenant %s",
                len(found), report.total_cents, tenant_id
            )
        else:
            logger.info("No misattributed payments for tenant %s", tenant_id)
        return report

    @staticmethod
    async def reassign_payments(payments: List[MisattributedPayment]) -> int:
        """Give misattributed payments back to the tenant that owns their invoice."""
        db = await get_database()

        moved = 0
        touched: Set[Tuple[str, str]] = set()
        for payment in payments:
            result = await db.payments.update_one(
                {"_id": ObjectId(payment.payment_id), "tenant_id": payment.current_tenant_id},
                {"$set": {"tenant_id": payment.correct_tenant_id, "updated_at": utcnow()}}
            )
            if result.modified_count:
                moved += 1
                touched.add((payment.current_tenant_id, payment.client_id))
                touched.add((payment.correct_tenant_id, payment.client_id))

        await _bump_ledgers(db, touched)
        logger.info("Reassigned %d of %d misattributed payment(s)", moved, len(payments))
        return moved

    @staticmethod
    async def reconstruct_payments(tenant_id: str, dry_run: bool = False) -> ReconstructionReport:
        """
        Rebuild payment records from invoice documents that still carry
        legacy payment data (embedded payments array, or a bare total paid).

        Invoices that already have payment records are skipped, so running
        the job twice restores nothing the second time.
        """
        db = await get_database()
        report = ReconstructionReport(tenant_id=tenant_id, dry_run=dry_run)

        docs = await db.documents.find({"tenant_id": tenant_id}).to_list(None)
        for doc in docs:
            report.documents_scanned += 1
            document_id = str(doc["_id"])

            existing = await db.payments.count_documents({"tenant_id": tenant_id, "document_id": document_id})
            if existing:
                report.documents_skipped += 1
                continue

            report.restored.extend(RecoveryService._records_from_document(tenant_id, doc))

        if report.restored and not dry_run:
            await db.payments.insert_many([r.to_document() for r in report.restored])
            await _bump_ledgers(db, {(tenant_id, r.client_id) for r in report.restored})

        logger.info(
            "Reconstruction for tenant %s%s: %d document(s) scanned, %d skipped, %d record(s) totalling %d",
            tenant_id, " (dry run)" if dry_run else "",
            report.documents_scanned, report.documents_skipped,
            len(report.restored), report.restored_cents
        )
        return report

    @staticmethod
    def _records_from_document(tenant_id: str, doc: Dict[str, Any]) -> List[PaymentRecord]:
        invoice = to_snapshot(doc)
        number = doc.get("document_number") or doc.get("invoice_number") or invoice.id
        label = f"{invoice.doc_type} #{number}"
        now = utcnow()

        legacy: List[Dict[str, Any]] = []
        embedded = doc.get("payments") or []
        partial = False
        if embedded:
            for index, payment in enumerate(embedded, start=1):
                amount = payment.get("amount_cents")
                if amount is None:
                    amount = to_cents(payment.get("amount"))
                legacy.append({
                    "amount_cents": amount,
                    "payment_date": _legacy_date(payment.get("date"), payment.get("timestamp")),
                    "payment_method": payment.get("method") or "unknown",
                    "reference": payment.get("reference") or f"Payment {index} for {label}",
                    "notes": payment.get("notes") or payment.get("note") or "Reconstructed from document",
                })
        else:
            total_paid = doc.get("total_paid_cents")
            if total_paid is None:
                total_paid = to_cents(doc.get("total_paid"))
            if total_paid > 0:
                partial = True
                legacy.append({
                    "amount_cents": total_paid,
                    "payment_date": _legacy_date(doc.get("updated_at"), doc.get("created_at")),
                    "payment_method": "unknown",
                    "reference": f"Reconstructed payment for {label}",
                    "notes": "Reconstructed from total paid - original payment details lost",
                })

        records: List[PaymentRecord] = []
        room = invoice.total_cents
        for entry in legacy:
            amount = entry.pop("amount_cents")
            if amount <= 0:
                continue
            allocate = min(amount, room)
            room -= allocate

            notes = entry.pop("notes")
            if partial:
                notes = append_note(notes, "Partial history")
            common = dict(
                tenant_id=tenant_id,
                client_id=invoice.client_id,
                reconstructed=True,
                created_at=now,
                updated_at=now,
                **entry
            )
            if allocate > 0:
                records.append(PaymentRecord(
                    **common,
                    document_id=invoice.id,
                    amount_cents=allocate,
                    settled_at=now,
                    notes=notes
                ))
            if amount > allocate:
                # Never allocate beyond the invoice total; the rest is client money
                records.append(PaymentRecord(
                    **common,
                    amount_cents=amount - allocate,
                    notes=append_note(notes, f"Excess over {label} held on client account")
                ))
        return records
