"""Shared test fixtures for clinicslot tests."""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

from datetime import datetime, time  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Generator  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from clinicslot.clock import FixedClock  # noqa: E402
from clinicslot.database import Base, build_engine  # noqa: E402
from clinicslot.domain.appointments.schemas import Actor, PatientInfo  # noqa: E402
from clinicslot.domain.appointments.service import AppointmentService  # noqa: E402
from clinicslot.domain.payments.dodo_service import (  # noqa: E402
    ORDER_PENDING,
    PaymentOrder,
    PaymentStatusResult,
    RefundReceipt,
)
from clinicslot.domain.refunds.policy import CancellationActor  # noqa: E402
from clinicslot.domain.slots.service import SlotService  # noqa: E402
from clinicslot.errors import PaymentProviderError  # noqa: E402
from clinicslot.models import Doctor, Slot, WeeklySchedule  # noqa: E402
from clinicslot.services.notification_service import NotificationService  # noqa: E402

# Monday
MONDAY = datetime(2026, 3, 2)


class FakePaymentGateway:
    """In-memory stand-in for the Dodo payment capability."""

    def __init__(self, available: bool = True):
        self.available = available
        self.fail_orders = False
        self.orders: dict[str, dict] = {}
        self.statuses: dict[str, str] = {}
        self.refunds: list[tuple] = []
        self.refund_status = "succeeded"
        self.refund_statuses: dict[str, str] = {}

    def is_available(self) -> bool:
        return self.available

    async def create_order(self, amount, receipt, customer_email=None, customer_name=None, metadata=None):
        if self.fail_orders:
            raise PaymentProviderError("Payment provider rejected the order", receipt=receipt)
        order_ref = f"cks_{len(self.orders) + 1}"
        self.orders[order_ref] = {"amount": amount, "receipt": receipt, "metadata": metadata}
        return PaymentOrder(
            order_ref=order_ref,
            checkout_url=f"https://checkout.test/{order_ref}",
            amount=amount,
            currency="INR",
        )

    async def get_order_status(self, order_ref):
        status = self.statuses.get(order_ref, ORDER_PENDING)
        return PaymentStatusResult(order_ref=order_ref, status=status, gateway_payment_id=f"pay_{order_ref}")

    async def create_refund(self, gateway_payment_id, amount, reason):
        self.refunds.append((gateway_payment_id, amount, reason))
        return RefundReceipt(gateway_refund_id=f"rfd_{len(self.refunds)}", status=self.refund_status)

    async def get_refund_status(self, gateway_refund_id):
        return RefundReceipt(
            gateway_refund_id=gateway_refund_id,
            status=self.refund_statuses.get(gateway_refund_id, ORDER_PENDING),
        )


class RecordingNotifier(NotificationService):
    """Renders real templates but records deliveries instead of sending."""

    def __init__(self):
        super().__init__(email_func=self._email, sms_func=self._sms)
        self.sent: list[tuple] = []

    async def _email(self, to_email, subject, body):
        self.sent.append(("email", to_email, subject))

    async def _sms(self, to_phone, message_body):
        self.sent.append(("sms", to_phone, message_body))
        return True, None

    def subjects(self) -> list[str]:
        return [entry[2] for entry in self.sent if entry[0] == "email"]


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so several sessions (and threads) share one database."""
    engine = build_engine(f"sqlite:///{tmp_path / 'clinicslot_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock() -> FixedClock:
    """Monday 2026-03-02 07:00 clinic time."""
    return FixedClock(MONDAY.replace(hour=7))


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def doctor(db) -> Doctor:
    """Doctor with Monday 09:00-12:00, 30 minute slots, capacity 1."""
    doctor = Doctor(
        full_name="Dr. Asha Rao",
        specialization="General Medicine",
        slot_duration_minutes=30,
        max_patients_per_slot=1,
        fee_in_person=Decimal("500.00"),
        fee_online=Decimal("400.00"),
        fee_walk_in=Decimal("0.00"),
    )
    db.add(doctor)
    db.flush()
    db.add(
        WeeklySchedule(
            doctor_id=doctor.id,
            day_of_week=0,
            start_time=time(9, 0),
            end_time=time(12, 0),
            slot_duration_minutes=30,
            max_patients_per_slot=1,
        )
    )
    db.commit()
    return doctor


@pytest.fixture
def slots(db, clock, doctor) -> list[Slot]:
    """Materialized Monday slots, ordered by start time."""
    SlotService(db, clock).materialize(doctor.id, MONDAY.date(), MONDAY.date())
    return (
        db.query(Slot)
        .filter(Slot.doctor_id == doctor.id)
        .order_by(Slot.start_time.asc())
        .all()
    )


@pytest.fixture
def service(db, clock, gateway, notifier) -> AppointmentService:
    return AppointmentService(db, clock, payments=gateway, notifier=notifier)


@pytest.fixture
def patient() -> PatientInfo:
    return PatientInfo(
        patient_id="patient-1",
        name="Ravi Kumar",
        email="ravi@example.com",
        phone="9876543210",
    )


@pytest.fixture
def patient_actor(patient) -> Actor:
    return Actor(role=CancellationActor.PATIENT, actor_id=patient.patient_id)


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(role=CancellationActor.ADMIN, actor_id="admin-1")
