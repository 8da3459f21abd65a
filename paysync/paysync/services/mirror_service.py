"""External payment mirroring.

Charges that did not come from the platform's own invoice flow are
mirrored into internal invoice records so billing sees one view of every
payment.  Each charge gets exactly one :class:`MirrorRecordTable` row; the
unique charge id on that table makes a repeat sighting a ``skip``.

Decision order for one charge:

1. already recorded -> ``skip`` (``already-processed``)
2. platform marker on the charge -> ``skip`` (``platform-origin``)
3. charge references an invoice -> ``skip`` (``platform-invoice``) when
   that invoice carries the marker, else ``imported``
4. no email -> ``unmatched`` (``no-email``)
5. no patient with that email -> ``unmatched`` (``no-match``)
6. otherwise a paid out-of-band invoice is created -> ``created``

Patients are never created here; unmatched charges wait for manual triage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paysync.config import ServiceSettings
from paysync.errors import ProcessorError
from paysync.handlers.base import currency_of, metadata_of, ref_id
from paysync.processor_client import ProcessorClient
from paysync.services.notifier import BillingNotification, BillingNotifier
from paysync.services.periodic import PeriodicWorker
from paysync_core.state.repository import (
    ChargeSnapshotRepository,
    CustomerRepository,
    InvoiceRepository,
    MirrorRecordRepository,
    PatientRepository,
    normalize_email,
)
from paysync_core.state.tables import PatientTable

logger = logging.getLogger(__name__)


class MirrorAction(str, Enum):
    SKIP = "skip"
    IMPORTED = "imported"
    CREATED = "created"


@dataclass(frozen=True)
class MirrorResult:
    action: MirrorAction
    invoice_id: str | None = None
    reason: str | None = None


class ExternalPaymentMirror:
    """Mirrors one external charge at a time.

    Parameters
    ----------
    session_factory:
        Session source for mirror records and local invoices.
    processor:
        Processor client used to look up invoices and customers and to
        create the mirrored invoice.
    settings:
        Provides the platform marker.
    notifier:
        Receives ``external_payment_mirrored`` notifications.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: ProcessorClient,
        settings: ServiceSettings,
        notifier: BillingNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._settings = settings
        self._notifier = notifier

    async def mirror(self, charge: dict[str, Any]) -> MirrorResult:
        """Mirror *charge* (a processor charge object).

        Transient processor errors propagate so the caller can try again
        later; any other processor error is recorded as ``failed``.
        """
        charge_id = charge["id"]
        amount = int(charge.get("amount") or 0)
        currency = currency_of(charge)

        async with self._session_factory() as session:
            if await MirrorRecordRepository(session).get_by_charge_id(charge_id) is not None:
                logger.debug("Charge %s already mirrored", charge_id, extra={"charge_id": charge_id})
                return MirrorResult(MirrorAction.SKIP, reason="already-processed")

        if self._settings.is_platform_marked(metadata_of(charge)):
            return await self._record(charge, "skip", MirrorResult(MirrorAction.SKIP, reason="platform-origin"))

        invoice_ref = ref_id(charge.get("invoice"))
        if invoice_ref:
            return await self._import(charge, invoice_ref)

        try:
            email = await self._resolve_email(charge)
        except ProcessorError as exc:
            return await self._record_failure(charge, exc)
        if email is None:
            logger.info("Charge %s has no payer email; left for review", charge_id, extra={"charge_id": charge_id})
            return await self._record(charge, "unmatched", MirrorResult(MirrorAction.SKIP, reason="no-email"))

        async with self._session_factory() as session:
            patient = await PatientRepository(session).find_by_email(email)
            known_customer = await CustomerRepository(session).get_for_patient(patient.patient_id) if patient else None
            known_customer_id = known_customer.processor_customer_id if known_customer else None
        if patient is None:
            logger.info("No patient matches charge %s", charge_id, extra={"charge_id": charge_id})
            return await self._record(
                charge,
                "unmatched",
                MirrorResult(MirrorAction.SKIP, reason="no-match"),
                email=email,
            )

        try:
            customer_id = known_customer_id or ref_id(charge.get("customer"))
            if customer_id is None:
                customer_id = await self._create_customer(charge_id, patient, email)
            invoice = await self._create_paid_invoice(charge, customer_id)
        except ProcessorError as exc:
            return await self._record_failure(charge, exc, email=email, patient_id=patient.patient_id)

        processor_invoice_id = invoice["id"]
        try:
            async with self._session_factory() as session:
                await InvoiceRepository(session).upsert(
                    {
                        "tenant_id": patient.tenant_id,
                        "processor_invoice_id": processor_invoice_id,
                        "processor_customer_id": customer_id,
                        "patient_id": patient.patient_id,
                        "amount_due": amount,
                        "amount_paid": amount,
                        "currency": currency,
                        "status": "paid",
                        "platform_origin": True,
                        "paid_out_of_band": True,
                        "paid_at": datetime.now(UTC),
                        "description": self._description(charge),
                    }
                )
                await MirrorRecordRepository(session).insert(
                    processor_charge_id=charge_id,
                    mode="created",
                    amount=amount,
                    currency=currency,
                    email=email,
                    matched_patient_id=patient.patient_id,
                    created_invoice_id=processor_invoice_id,
                    note=charge.get("description"),
                )
                await session.commit()
        except IntegrityError:
            logger.info("Charge %s mirrored concurrently", charge_id, extra={"charge_id": charge_id})
            return MirrorResult(MirrorAction.SKIP, reason="already-processed")

        logger.info(
            "Mirrored charge %s to invoice %s for patient %s",
            charge_id,
            processor_invoice_id,
            patient.patient_id,
            extra={"charge_id": charge_id, "tenant_id": patient.tenant_id},
        )
        if self._notifier is not None:
            await self._notifier.notify(
                BillingNotification(
                    type="external_payment_mirrored",
                    title=f"External payment mirrored for patient {patient.patient_id}",
                    body=f"{amount} {currency} from charge {charge_id}",
                    tenant_id=patient.tenant_id,
                    data={
                        "patient_id": patient.patient_id,
                        "email": email,
                        "amount": amount,
                        "currency": currency,
                        "mirrored_charge_id": charge_id,
                        "created_invoice_id": processor_invoice_id,
                        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                    },
                )
            )
        return MirrorResult(MirrorAction.CREATED, invoice_id=processor_invoice_id)

    # -- Steps -------------------------------------------------------------

    async def _import(self, charge: dict[str, Any], invoice_id: str) -> MirrorResult:
        try:
            invoice = await self._processor.retrieve_invoice(invoice_id)
            if self._settings.is_platform_marked(metadata_of(invoice)):
                return await self._record(
                    charge,
                    "skip",
                    MirrorResult(MirrorAction.SKIP, invoice_id=invoice_id, reason="platform-invoice"),
                )
            email = await self._resolve_email(charge)
        except ProcessorError as exc:
            return await self._record_failure(charge, exc)

        patient_id = None
        if email is not None:
            async with self._session_factory() as session:
                patient = await PatientRepository(session).find_by_email(email)
                patient_id = patient.patient_id if patient else None
        return await self._record(
            charge,
            "imported",
            MirrorResult(MirrorAction.IMPORTED, invoice_id=invoice_id),
            email=email,
            patient_id=patient_id,
        )

    async def _resolve_email(self, charge: dict[str, Any]) -> str | None:
        billing = charge.get("billing_details") or {}
        email = normalize_email(billing.get("email")) or normalize_email(charge.get("receipt_email"))
        if email is not None:
            return email
        customer = charge.get("customer")
        if isinstance(customer, dict):
            return normalize_email(customer.get("email"))
        if not customer:
            return None
        try:
            retrieved = await self._processor.retrieve_customer(customer)
        except ProcessorError as exc:
            if exc.transient:
                raise
            logger.warning("Could not retrieve customer %s for charge %s: %s", customer, charge["id"], exc)
            return None
        return normalize_email(retrieved.get("email"))

    async def _create_customer(self, charge_id: str, patient: PatientTable, email: str) -> str:
        name = " ".join(part for part in (patient.first_name, patient.last_name) if part) or None
        customer = await self._processor.create_customer(
            email=email,
            name=name,
            idempotency_key=f"mirror:{charge_id}-customer",
            metadata={
                "tenant_id": patient.tenant_id,
                "patient_id": patient.patient_id,
                **self._settings.platform_metadata,
            },
        )
        async with self._session_factory() as session:
            await CustomerRepository(session).upsert(
                {
                    "tenant_id": patient.tenant_id,
                    "processor_customer_id": customer["id"],
                    "patient_id": patient.patient_id,
                    "email": email,
                    "name": name,
                }
            )
            await session.commit()
        return customer["id"]

    async def _create_paid_invoice(self, charge: dict[str, Any], customer_id: str) -> dict[str, Any]:
        charge_id = charge["id"]
        key = f"mirror:{charge_id}"
        metadata = {**self._settings.platform_metadata, "mirrored_charge_id": charge_id}
        description = self._description(charge)

        invoice = await self._processor.create_invoice(
            customer=customer_id,
            description=description,
            metadata=metadata,
            idempotency_key=f"{key}-invoice",
        )
        await self._processor.create_invoice_item(
            customer=customer_id,
            invoice=invoice["id"],
            amount=int(charge.get("amount") or 0),
            currency=currency_of(charge),
            description=description,
            idempotency_key=f"{key}-item",
        )
        finalized = await self._processor.finalize_invoice(invoice["id"], idempotency_key=f"{key}-finalize")
        return await self._processor.pay_invoice_out_of_band(finalized["id"], idempotency_key=f"{key}-pay")

    @staticmethod
    def _description(charge: dict[str, Any]) -> str:
        base = f"Mirrored payment from charge {charge['id']}"
        return f"{base} - {charge['description']}" if charge.get("description") else base

    # -- Recording ---------------------------------------------------------

    async def _record(
        self,
        charge: dict[str, Any],
        mode: str,
        result: MirrorResult,
        *,
        email: str | None = None,
        patient_id: str | None = None,
        note: str | None = None,
    ) -> MirrorResult:
        try:
            async with self._session_factory() as session:
                await MirrorRecordRepository(session).insert(
                    processor_charge_id=charge["id"],
                    mode=mode,
                    amount=int(charge.get("amount") or 0),
                    currency=currency_of(charge),
                    email=email,
                    matched_patient_id=patient_id,
                    created_invoice_id=result.invoice_id if mode == "imported" else None,
                    note=note or result.reason,
                )
                await session.commit()
        except IntegrityError:
            return MirrorResult(MirrorAction.SKIP, reason="already-processed")
        return result

    async def _record_failure(
        self,
        charge: dict[str, Any],
        exc: ProcessorError,
        *,
        email: str | None = None,
        patient_id: str | None = None,
    ) -> MirrorResult:
        if exc.transient:
            raise exc
        logger.error(
            "Processor error mirroring charge %s: %s",
            charge["id"],
            exc,
            extra={"charge_id": charge["id"]},
        )
        return await self._record(
            charge,
            "failed",
            MirrorResult(MirrorAction.SKIP, reason="processor-error"),
            email=email,
            patient_id=patient_id,
            note=f"Error: {exc}",
        )


@dataclass
class MirrorSweepSummary:
    scanned: int = 0
    results: dict[str, int] = field(default_factory=dict)
    deferred: int = 0


class MirrorWorker(PeriodicWorker):
    """Periodically mirrors snapshotted external charges."""

    name = "mirror-worker"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mirror: ExternalPaymentMirror,
        *,
        batch_size: int = 25,
        interval_seconds: float = 60.0,
    ) -> None:
        super().__init__(interval_seconds)
        self._session_factory = session_factory
        self._mirror = mirror
        self._batch_size = batch_size

    async def run_once(self) -> None:
        summary = await self.sweep()
        if summary.scanned:
            logger.info("Mirror sweep: scanned=%d results=%s", summary.scanned, summary.results)

    async def sweep(self) -> MirrorSweepSummary:
        async with self._session_factory() as session:
            pending = await ChargeSnapshotRepository(session).list_pending(limit=self._batch_size)
            charges = [(row.processor_charge_id, row.payload) for row in pending]

        summary = MirrorSweepSummary(scanned=len(charges))
        for charge_id, payload in charges:
            try:
                result = await self._mirror.mirror(payload)
            except ProcessorError as exc:
                summary.deferred += 1
                logger.warning("Deferring charge %s after transient processor error: %s", charge_id, exc)
                continue
            key = result.action.value if result.reason is None else f"{result.action.value}:{result.reason}"
            summary.results[key] = summary.results.get(key, 0) + 1
            async with self._session_factory() as session:
                await ChargeSnapshotRepository(session).mark_mirrored(charge_id)
                await session.commit()
        return summary
