from decimal import Decimal

import pytest

from expenseflow.db import connect_sqlite, migrate
from expenseflow.identity import Identity
from expenseflow.models import UserProfile
from expenseflow.repositories import ProfileRepository

BUSINESS_PURPOSE = (
    "Quarterly on-site review with the client's operations team to walk through the "
    "rollout plan, collect sign-off on the revised delivery milestones and train the "
    "branch staff on the new reporting workflow before the end of the fiscal quarter."
)

PROFILES = (
    UserProfile(id="admin1", email="admin@example.com", full_name="Ada Admin", role="admin"),
    UserProfile(
        id="manager1",
        email="manager@example.com",
        full_name="Mona Manager",
        role="manager",
        approval_limit=Decimal("5000"),
        single_transaction_limit=Decimal("1000"),
    ),
    UserProfile(
        id="manager2",
        email="lead@example.com",
        full_name="Lee Lead",
        role="manager",
        approval_limit=Decimal("20000"),
        single_transaction_limit=Decimal("10000"),
        manager_id="admin1",
    ),
    UserProfile(id="finance1", email="finance@example.com", full_name="Fay Finance", role="finance"),
    UserProfile(
        id="user123",
        email="user123@example.com",
        full_name="Umar User",
        role="employee",
        manager_id="manager1",
    ),
    UserProfile(
        id="user456",
        email="user456@example.com",
        full_name="Uma Other",
        role="employee",
        manager_id="manager1",
    ),
)


class RecordingEmailSender:
    enabled = True

    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, to, subject, html):
        if self.fail:
            raise ConnectionError("SMTP server unavailable")
        self.sent.append({"to": to, "subject": subject, "html": html})


def seed_profiles(conn):
    repo = ProfileRepository(conn)
    with conn:
        for profile in PROFILES:
            repo.upsert(profile)


@pytest.fixture
def database_path(tmp_path):
    return tmp_path / "expenseflow.db"


@pytest.fixture
def conn(database_path):
    conn = connect_sqlite(database_path)
    migrate(conn)
    seed_profiles(conn)
    yield conn
    conn.close()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def identity():
    def make(user_id):
        return Identity(user_id=user_id, email=f"{user_id}@example.com")

    return make


@pytest.fixture
def travel_form():
    def make(**overrides):
        form = {
            "type": "travel",
            "totalAmount": "1500",
            "currency": "BDT",
            "description": "Business trip to client site",
            "businessPurpose": BUSINESS_PURPOSE,
            "startDate": "2026-03-02",
            "endDate": "2026-03-04",
            "startLocation": {"address": "Head office, Dhaka"},
            "endLocation": {"address": "Client office, Chattogram", "coordinates": {"lat": 22.35, "lng": 91.78}},
            "transportationType": "car",
            "vehicleOwnership": "own",
            "roundTrip": True,
            "mileage": "520",
            "fuelCost": "120.50",
            "tollCharges": "30",
        }
        form.update(overrides)
        return form

    return make


@pytest.fixture
def maintenance_form():
    def make(**overrides):
        form = {
            "type": "maintenance",
            "totalAmount": "850",
            "currency": "BDT",
            "description": "Electrical repair in branch office",
            "businessPurpose": BUSINESS_PURPOSE,
            "serviceDate": "2026-03-10",
            "category": "repairs",
            "subCategory": "electrician",
            "vendorName": "Bright Sparks Ltd",
            "invoiceNumber": "INV-2231",
            "warrantyApplicable": False,
        }
        form.update(overrides)
        return form

    return make


@pytest.fixture
def requisition_form():
    def make(**overrides):
        form = {
            "type": "requisition",
            "totalAmount": "500",
            "currency": "BDT",
            "description": "Monthly deep cleaning of the archive room",
            "businessPurpose": BUSINESS_PURPOSE,
            "serviceType": "cleaning",
            "subType": "deep-clean",
            "duration": "2 days",
            "frequency": "monthly",
            "requiredBy": "2026-04-01",
            "quantity": "2",
            "unitPrice": "250",
            "urgencyLevel": "medium",
            "preferredVendor": "Spotless Services",
        }
        form.update(overrides)
        return form

    return make
