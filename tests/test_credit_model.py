from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from models.entities.documents.credits import CarbonCredit, CarbonCreditData, normalise_availability
from models.entities.documents.users import User, UserData

from conftest import credit_payload


def make_data(**overrides) -> CarbonCreditData:
    return CarbonCreditData(seller_id="seller-1", **credit_payload(**overrides))


def test_available_is_clamped_to_total():
    data = make_data(total_credits=100, available_credits=250)
    assert data.available_credits == 100


def test_zero_available_active_listing_is_sold_out():
    data = make_data(available_credits=0, status="active")
    assert data.status == "sold-out"

    data.available_credits = 5
    normalise_availability(data)
    assert data.status == "active"


def test_draft_listing_keeps_status_when_empty():
    data = make_data(available_credits=0, status="draft")
    assert data.status == "draft"


@pytest.mark.parametrize(
    "overrides",
    [
        {"total_credits": 0},
        {"total_credits": 1_000_001},
        {"price_per_credit": 0},
        {"price_per_credit": 1000.01},
        {"title": ""},
        {"title": "x" * 101},
        {"energy_type": "coal"},
        {"currency": "JPY"},
    ],
)
def test_invalid_listing_rejected(overrides):
    with pytest.raises(ValidationError):
        make_data(**overrides)


def test_tags_are_normalised():
    assert make_data(tags=[" Solar ", "", "PV"]).tags == ["solar", "pv"]


def test_values_are_computed():
    data = make_data(total_credits=1000, available_credits=800, price_per_credit=25.50)
    assert data.total_value == 25500.0
    assert data.available_value == 20400.0


def test_purchasability():
    now = datetime.now(timezone.utc)
    data = make_data(status="active", is_verified=True)
    assert data.is_available_for_purchase(800)
    assert not data.is_available_for_purchase(801)

    assert not make_data(status="active", is_verified=False).is_available_for_purchase(1)
    assert not make_data(status="draft", is_verified=True).is_available_for_purchase(1)

    lapsed = make_data(status="active", is_verified=True)
    lapsed.certification.expiry_date = now - timedelta(seconds=1)
    assert not lapsed.is_available_for_purchase(1, now=now)


def test_naive_certification_dates_are_utc():
    data = make_data(
        certification={
            "standard": "Gold Standard",
            "certifier": "GS",
            "certificate_number": "GS-1",
            "issue_date": "2025-01-01T00:00:00",
            "expiry_date": "2030-01-01T00:00:00",
        }
    )
    assert data.certification.expiry_date.tzinfo is not None


def test_wire_format_is_camel_case():
    credit = CarbonCredit(id="c1", data=make_data(project_details={"estimated_co2_reduction": 1200}))
    body = credit.public_dict()
    assert body["id"] == "c1"
    assert body["pricePerCredit"] == 25.5
    assert body["availableCredits"] == 800
    assert body["projectLocation"]["country"] == "Kenya"
    assert body["certification"]["certificateNumber"] == "VCS-1234"
    assert body["projectDetails"]["estimatedCO2Reduction"] == 1200
    assert "price_per_credit" not in body


def test_camel_case_input_is_accepted():
    data = CarbonCreditData.model_validate(
        {
            "sellerId": "s",
            "title": "Hydro",
            "description": "Run of river",
            "energyType": "hydro",
            "projectLocation": {"country": "Nepal"},
            "totalCredits": 10,
            "availableCredits": 10,
            "pricePerCredit": 5,
            "certification": {
                "standard": "CDM",
                "certifier": "UNFCCC",
                "certificateNumber": "CDM-9",
                "issueDate": "2025-01-01T00:00:00Z",
                "expiryDate": "2030-01-01T00:00:00Z",
            },
        }
    )
    assert data.energy_type == "hydro"
    assert data.certification.certificate_number == "CDM-9"


def test_password_hash_is_stored_but_never_serialised():
    user = User(
        id="u1",
        data=UserData(email=" Ana@Example.COM ", hashed_password="$2b$hash", first_name="Ana", last_name="Lopez"),
    )
    assert user.data.email == "ana@example.com"
    assert "hashedPassword" not in user.public_dict()
    assert "hashed_password" not in user.public_dict()
    assert User.model_dump_with_excluded_attributes(user.data)["hashed_password"] == "$2b$hash"
