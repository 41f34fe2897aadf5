"""Refund repository - Database operations for refund records"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...models import Payment, PaymentStatus, RefundRecord, RefundStatus
from .policy import RefundDecision


class RefundRepository:
    """Repository for refund record database operations"""

    @staticmethod
    def create_refund(
        db: Session,
        appointment_id: int,
        payment_id: Optional[int],
        decision: RefundDecision,
        cancelled_by: str,
        reason: Optional[str],
        now: datetime,
    ) -> RefundRecord:
        """Add a pending refund record to the caller's transaction"""
        refund = RefundRecord(
            appointment_id=appointment_id,
            payment_id=payment_id,
            refund_type=decision.refund_type,
            percentage=decision.percentage,
            original_amount=decision.original_amount,
            amount=decision.amount,
            platform_fee_refund=decision.platform_fee_refund,
            cancelled_by=cancelled_by,
            reason=reason,
            # Nothing to settle for a zero refund
            status=(RefundStatus.PENDING if decision.is_refundable else RefundStatus.COMPLETED).value,
            created_at=now,
            completed_at=None if decision.is_refundable else now,
        )
        db.add(refund)
        db.flush()
        return refund

    @staticmethod
    def get_refunds_for_appointment(db: Session, appointment_id: int) -> list[RefundRecord]:
        return (
            db.query(RefundRecord)
            .filter(RefundRecord.appointment_id == appointment_id)
            .order_by(RefundRecord.created_at.asc(), RefundRecord.id.asc())
            .all()
        )

    @staticmethod
    def get_pending_refunds(db: Session, limit: int = 50) -> list[RefundRecord]:
        return (
            db.query(RefundRecord)
            .filter(RefundRecord.status == RefundStatus.PENDING.value)
            .order_by(RefundRecord.created_at.asc(), RefundRecord.id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_processing_refunds(db: Session, limit: int = 50) -> list[RefundRecord]:
        """Refunds submitted to the provider that have not reported an outcome yet"""
        return (
            db.query(RefundRecord)
            .filter(
                RefundRecord.status == RefundStatus.PROCESSING.value,
                RefundRecord.gateway_refund_id.isnot(None),
            )
            .order_by(RefundRecord.processed_at.asc(), RefundRecord.id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def get_by_gateway_refund_id(db: Session, gateway_refund_id: str) -> Optional[RefundRecord]:
        return db.query(RefundRecord).filter(RefundRecord.gateway_refund_id == gateway_refund_id).first()

    @staticmethod
    def mark_completed(db: Session, refund: RefundRecord, now: datetime) -> bool:
        """
        processing → completed. A full refund also marks its payment refunded.

        Returns False when another worker or webhook already settled it.
        """
        result = db.execute(
            update(RefundRecord)
            .where(RefundRecord.id == refund.id, RefundRecord.status == RefundStatus.PROCESSING.value)
            .values(status=RefundStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False

        if refund.payment_id and refund.percentage == 100:
            db.execute(
                update(Payment)
                .where(Payment.id == refund.payment_id)
                .values(status=PaymentStatus.REFUNDED.value)
                .execution_options(synchronize_session=False)
            )
        db.flush()
        db.refresh(refund)
        return True

    @staticmethod
    def mark_failed(db: Session, refund: RefundRecord, reason: str) -> bool:
        """pending|processing → failed; a completed refund is never reopened"""
        result = db.execute(
            update(RefundRecord)
            .where(
                RefundRecord.id == refund.id,
                RefundRecord.status.in_([RefundStatus.PENDING.value, RefundStatus.PROCESSING.value]),
            )
            .values(status=RefundStatus.FAILED.value, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        db.flush()
        db.refresh(refund)
        return result.rowcount > 0
