from datetime import date, timedelta

import pytest

from popup_engine.errors import NotFoundError, ValidationError
from popup_engine.schemas.common import Coordinates
from popup_engine.schemas.verification import ActiveCode, CheckinRequest, ReceiptEvidence
from popup_engine.services.attendance_verification_service import (
    CheckinEvaluator, GeoScorer, attendance_verification_service, brand_in_text, brand_matches,
    haversine_distance,
)
from tests.conftest import NOW, POPUP_LAT, POPUP_LON, offset_north

VENUE = Coordinates(latitude=POPUP_LAT, longitude=POPUP_LON)
LIVE_CODE = ActiveCode(code="482913", expires_at=NOW + timedelta(seconds=30))
GENTLE_MONSTER_RECEIPT = ReceiptEvidence(
    text="GENTLE MONSTER Seongsu TOTAL 32000",
    brand_name="GENTLE MONSTER",
    purchase_date=date(2026, 10, 1),
    total_amount=32000
)


def make_request(meters=None, qr_code=None, accuracy=None, receipt=None, user_id="user-1"):
    location = (
        Coordinates(latitude=offset_north(meters), longitude=POPUP_LON)
        if meters is not None else None
    )
    return CheckinRequest(
        popup_id="popup-1",
        user_id=user_id,
        user_location=location,
        accuracy_meters=accuracy,
        qr_code=qr_code,
        receipt=receipt
    )


def evaluate(request, codes=(LIVE_CODE,), used=False):
    return CheckinEvaluator().evaluate(
        request=request,
        popup_location=VENUE,
        brand_name="Gentle Monster",
        active_codes=list(codes),
        now=NOW,
        code_already_used=used
    )


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_distance(POPUP_LAT, POPUP_LON, POPUP_LAT, POPUP_LON) == 0

    def test_thirty_meters_north(self):
        distance = haversine_distance(offset_north(30), POPUP_LON, POPUP_LAT, POPUP_LON)
        assert distance == pytest.approx(30, abs=0.5)


class TestGeoScorer:
    def test_linear_decay_between_radii(self):
        score = GeoScorer().score(VENUE, Coordinates(latitude=offset_north(75), longitude=POPUP_LON))
        assert score.score == 50
        assert score.proximity == "near"

    def test_beyond_outer_radius(self):
        score = GeoScorer().score(VENUE, Coordinates(latitude=offset_north(250), longitude=POPUP_LON))
        assert score.score == 0
        assert score.proximity == "far"

    def test_coarse_accuracy_caps_score(self):
        score = GeoScorer().score(
            VENUE, Coordinates(latitude=offset_north(10), longitude=POPUP_LON), accuracy_meters=150
        )
        assert score.score == 50
        assert score.capped is True

    def test_zero_full_score_radius_is_respected(self):
        scorer = GeoScorer(full_score_radius_m=0, outer_radius_m=100)
        assert scorer.full_score_radius_m == 0
        score = scorer.score(VENUE, Coordinates(latitude=offset_north(50), longitude=POPUP_LON))
        assert score.score == 50

    def test_invalid_latitude_rejected(self):
        with pytest.raises(ValidationError):
            GeoScorer().score(VENUE, Coordinates(latitude=95.0, longitude=POPUP_LON))

    def test_negative_accuracy_rejected(self):
        with pytest.raises(ValidationError):
            GeoScorer().score(VENUE, None, accuracy_meters=-1)


class TestCheckinEvaluator:
    def test_close_gps_and_valid_code_scores_full(self):
        result = evaluate(make_request(meters=30, qr_code="482913"))
        assert result.total_score == 100
        assert result.passed is True
        assert result.failure_reasons == []
        assert result.summary_badge == "success"
        assert result.reward_badge == "gold"

    def test_gps_alone_reaches_threshold(self):
        result = evaluate(make_request(meters=30))
        assert result.total_score == 60
        assert result.passed is True
        assert result.summary_badge == "partial"

    def test_half_gps_without_code_fails(self):
        result = evaluate(make_request(meters=75))
        assert result.total_score == 30
        assert result.passed is False
        assert result.failure_reasons == ["code_missing"]

    def test_far_away_with_code_fails(self):
        result = evaluate(make_request(meters=500, qr_code="482913"))
        assert result.total_score == 40
        assert result.passed is False
        assert "location_out_of_range" in result.failure_reasons

    def test_missing_location_reported(self):
        result = evaluate(make_request(qr_code="482913"))
        assert result.passed is False
        assert "location_missing" in result.failure_reasons

    def test_expired_code(self):
        expired = ActiveCode(code="482913", expires_at=NOW - timedelta(seconds=1))
        result = evaluate(make_request(meters=30, qr_code="482913"), codes=[expired])
        assert result.breakdown.qr.expired is True
        assert result.total_score == 60
        assert result.passed is True

    def test_wrong_code(self):
        result = evaluate(make_request(meters=500, qr_code="000000"))
        assert result.failure_reasons == ["location_out_of_range", "code_mismatch"]

    def test_previous_code_still_valid_during_rotation(self):
        codes = [
            ActiveCode(code="111111", expires_at=NOW + timedelta(seconds=5)),
            LIVE_CODE,
        ]
        result = evaluate(make_request(meters=30, qr_code="111111"), codes=codes)
        assert result.breakdown.qr.score == 100

    def test_reused_code_always_fails(self):
        result = evaluate(make_request(meters=10, qr_code="482913"), used=True)
        assert result.passed is False
        assert "code_already_used" in result.failure_reasons

    def test_receipt_bonus_can_carry_a_check_in(self):
        result = evaluate(make_request(meters=500, qr_code="482913", receipt=GENTLE_MONSTER_RECEIPT))
        assert result.breakdown.receipt.verified is True
        assert result.total_score == 60
        assert result.passed is True

    def test_total_capped_at_100(self):
        result = evaluate(make_request(meters=5, qr_code="482913", receipt=GENTLE_MONSTER_RECEIPT))
        assert result.total_score == 100

    def test_low_confidence_receipt_unverified(self):
        receipt = GENTLE_MONSTER_RECEIPT.model_copy(update={"ocr_confidence": 0.2})
        result = evaluate(make_request(meters=500, receipt=receipt))
        assert result.breakdown.receipt.verified is False
        assert "receipt_unverified" in result.failure_reasons

    def test_other_store_receipt_does_not_lift_check_in(self):
        receipt = ReceiptEvidence(
            text="DAISO SEOUL HOUSEWARES TOTAL 9000",
            brand_name="DAISO",
            purchase_date=date(2026, 10, 1),
            total_amount=9000
        )
        result = evaluate(make_request(meters=67, receipt=receipt))
        assert result.breakdown.gps.score < 100
        assert result.breakdown.receipt.brand_matched is False
        assert result.breakdown.receipt_points == 0
        assert result.passed is False
        assert "receipt_unverified" in result.failure_reasons

    def test_text_only_receipt_needs_brand_in_text(self):
        foreign = ReceiptEvidence(
            text="STARBUCKS COFFEE SEOUL AMERICANO TOTAL THANK YOU",
            purchase_date=date(2026, 10, 1),
            total_amount=9000
        )
        assert evaluate(make_request(meters=500, receipt=foreign)).breakdown.receipt.verified is False

        own = foreign.model_copy(update={"text": "GENTLE-MONSTER Seongsu TOTAL 32000"})
        assert evaluate(make_request(meters=500, receipt=own)).breakdown.receipt.verified is True

    def test_receipt_without_date_or_amount_unverified(self):
        no_date = GENTLE_MONSTER_RECEIPT.model_copy(update={"purchase_date": None})
        no_amount = GENTLE_MONSTER_RECEIPT.model_copy(update={"total_amount": None})

        first = evaluate(make_request(meters=500, receipt=no_date)).breakdown.receipt
        assert first.date_valid is False
        assert first.verified is False
        second = evaluate(make_request(meters=500, receipt=no_amount)).breakdown.receipt
        assert second.amount_valid is False
        assert second.verified is False


class TestBrandMatching:
    def test_containment(self):
        assert brand_matches("GENTLE-MONSTER Seongsu", "Gentle Monster")

    def test_similar_store_name(self):
        assert brand_matches("Gentl Monstr", "Gentle Monster")

    def test_unrelated(self):
        assert not brand_matches("xyz", "Gentle Monster")

    def test_empty(self):
        assert not brand_matches("", "Gentle Monster")

    def test_full_text_requires_containment(self):
        text = "STARBUCKS COFFEE SEOUL 2 AMERICANO TOTAL 9000 THANK YOU"
        assert not brand_in_text(text, "Tamburins")
        assert brand_in_text("** TAMBURINS store 12 **", "Tamburins")


class TestAttendanceVerificationService:
    def test_verify_persists_attempt(self, db, popup, code_store):
        code_store.publish("popup-1", [LIVE_CODE])
        result = attendance_verification_service.verify(
            db, make_request(meters=30, qr_code="482913"), code_store, NOW
        )
        assert result.passed is True

        history = attendance_verification_service.get_checkin_history(db, popup_id="popup-1")
        assert len(history) == 1
        record = history[0]
        assert record.id == result.record_id
        assert record.total_score == 100
        assert record.evidence.user_latitude == round(offset_north(30), 4)
        assert record.evidence.code_hash is not None

    def test_code_cannot_be_reused_by_same_user(self, db, popup, code_store):
        code_store.publish("popup-1", [LIVE_CODE])
        request = make_request(meters=30, qr_code="482913")
        first = attendance_verification_service.verify(db, request, code_store, NOW)
        second = attendance_verification_service.verify(db, request, code_store, NOW)

        assert first.passed is True
        assert second.passed is False
        assert "code_already_used" in second.failure_reasons
        assert len(attendance_verification_service.get_checkin_history(db, user_id="user-1")) == 2

    def test_other_user_may_use_same_code(self, db, popup, code_store):
        code_store.publish("popup-1", [LIVE_CODE])
        attendance_verification_service.verify(
            db, make_request(meters=30, qr_code="482913"), code_store, NOW
        )
        other = attendance_verification_service.verify(
            db, make_request(meters=30, qr_code="482913", user_id="user-2"), code_store, NOW
        )
        assert other.passed is True

    def test_no_published_code(self, db, popup, code_store):
        result = attendance_verification_service.verify(
            db, make_request(meters=30, qr_code="482913"), code_store, NOW
        )
        assert result.breakdown.qr.reason == "no_active_code"

    def test_unknown_popup(self, db, code_store):
        with pytest.raises(NotFoundError):
            attendance_verification_service.verify(db, make_request(meters=30), code_store, NOW)

    def test_popup_not_open(self, db, popup, code_store):
        popup.status = "funding"
        db.commit()
        with pytest.raises(ValidationError):
            attendance_verification_service.verify(db, make_request(meters=30), code_store, NOW)
