"""
Attendance Verification - GPS + QR + receipt check-in scoring

Decides whether a visitor was genuinely at a popup. Each channel yields a
0-100 sub-score, the weighted sum is compared to a pass threshold, and
every attempt is stored as an immutable record.

Failed verifications are ordinary results carrying `failure_reasons`;
only malformed input and unknown popups raise.
"""
import hashlib
import hmac
import logging
import math
import re
import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from popup_engine.config import settings
from popup_engine.db.models import CheckinAttempt, Popup
from popup_engine.errors import NotFoundError, ValidationError
from popup_engine.schemas.common import Coordinates, as_utc
from popup_engine.schemas.verification import (
    ActiveCode, CheckinBreakdown, CheckinEvidence, CheckinRecord,
    CheckinRequest, CheckinResult, CodeScore, GeoScore, ReceiptEvidence,
    ReceiptScore,
)
from popup_engine.services.cache_service import CodeStore

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000

# Popup statuses that accept check-ins
CHECKIN_OPEN_STATUSES = ("confirmed", "completed")

# Proximity labels (metres)
PROXIMITY_EXACT_M = 20

# Badge thresholds (total score)
SUCCESS_BADGE_MIN = 70
REWARD_BADGES = [(80, "gold"), (70, "silver")]


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two GPS coordinates in metres."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def _validate_coordinates(location: Coordinates) -> None:
    lat, lon = location.latitude, location.longitude
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise ValidationError("Coordinates must be finite numbers")
    if not -90 <= lat <= 90:
        raise ValidationError(f"Latitude out of range: {lat}", {"latitude": lat})
    if not -180 <= lon <= 180:
        raise ValidationError(f"Longitude out of range: {lon}", {"longitude": lon})


class GeoScorer:
    """Distance-to-venue score with a coarse-accuracy cap"""

    def __init__(
        self,
        full_score_radius_m: float = None,
        outer_radius_m: float = None,
        coarse_accuracy_m: float = None,
        coarse_score_cap: int = None
    ):
        self.full_score_radius_m = (
            full_score_radius_m if full_score_radius_m is not None else settings.GPS_FULL_SCORE_RADIUS_M
        )
        self.outer_radius_m = (
            outer_radius_m if outer_radius_m is not None else settings.GPS_OUTER_RADIUS_M
        )
        self.coarse_accuracy_m = (
            coarse_accuracy_m if coarse_accuracy_m is not None else settings.GPS_COARSE_ACCURACY_M
        )
        self.coarse_score_cap = (
            coarse_score_cap if coarse_score_cap is not None else settings.GPS_COARSE_SCORE_CAP
        )
        if self.outer_radius_m <= self.full_score_radius_m:
            raise ValueError("outer radius must exceed the full-score radius")

    def proximity(self, distance_m: float) -> str:
        if distance_m <= PROXIMITY_EXACT_M:
            return "exact"
        if distance_m <= self.full_score_radius_m:
            return "close"
        if distance_m <= self.outer_radius_m:
            return "near"
        return "far"

    def score(
        self,
        popup_location: Coordinates,
        user_location: Optional[Coordinates],
        accuracy_meters: Optional[float] = None
    ) -> GeoScore:
        if accuracy_meters is not None and (
            not math.isfinite(accuracy_meters) or accuracy_meters < 0
        ):
            raise ValidationError(
                "accuracy_meters must be a non-negative number",
                {"accuracy_meters": accuracy_meters}
            )
        if user_location is None:
            return GeoScore(score=0, accuracy_m=accuracy_meters)

        _validate_coordinates(user_location)
        distance = haversine_distance(
            user_location.latitude, user_location.longitude,
            popup_location.latitude, popup_location.longitude
        )

        if distance <= self.full_score_radius_m:
            score = 100
        elif distance <= self.outer_radius_m:
            span = self.outer_radius_m - self.full_score_radius_m
            score = round(100 * (self.outer_radius_m - distance) / span)
        else:
            score = 0

        capped = accuracy_meters is not None and accuracy_meters > self.coarse_accuracy_m
        if capped:
            score = min(score, self.coarse_score_cap)

        return GeoScore(
            score=score,
            distance_m=round(distance),
            accuracy_m=accuracy_meters,
            proximity=self.proximity(distance),
            capped=capped
        )


class CodeScorer:
    """Pass/fail match of a submitted code against the published rotating codes"""

    def score(
        self,
        submitted: Optional[str],
        active_codes: List[ActiveCode],
        now: datetime,
        already_used: bool = False
    ) -> CodeScore:
        if not submitted:
            return CodeScore(score=0, reason="code_missing")
        if not active_codes:
            return CodeScore(score=0, reason="no_active_code")

        submitted = submitted.strip()
        matches = [
            c for c in active_codes
            if hmac.compare_digest(c.code.encode(), submitted.encode())
        ]
        if not matches:
            return CodeScore(score=0, reason="code_mismatch")
        if all(as_utc(c.expires_at) <= now for c in matches):
            return CodeScore(score=0, matched=True, expired=True, reason="code_expired")
        if already_used:
            return CodeScore(score=0, matched=True, reason="code_already_used")
        return CodeScore(score=100, matched=True)


def normalize_brand(value: str) -> str:
    return re.sub(r"[^\w]|_", "", value.lower())


def brand_matches(receipt_brand: str, brand_name: str, min_similarity: float = 0.5) -> bool:
    """
    Exact, containment, or shared-character similarity of normalized names.

    Only meaningful for a short extracted store name; use
    `brand_in_text` for full receipt text.
    """
    receipt = normalize_brand(receipt_brand)
    expected = normalize_brand(brand_name)
    if not receipt or not expected:
        return False
    if receipt == expected or expected in receipt or receipt in expected:
        return True

    longer, shorter = (receipt, expected) if len(receipt) > len(expected) else (expected, receipt)
    matches = sum(1 for ch in shorter if ch in longer)
    return matches / len(shorter) >= min_similarity


def brand_in_text(receipt_text: str, brand_name: str) -> bool:
    expected = normalize_brand(brand_name)
    return bool(expected) and expected in normalize_brand(receipt_text)


class ReceiptScorer:
    """Optional bonus for a receipt already read by the OCR collaborator"""

    def __init__(self, bonus: int = None, min_confidence: float = None, min_similarity: float = None):
        self.bonus = bonus if bonus is not None else settings.CHECKIN_RECEIPT_BONUS
        self.min_confidence = (
            min_confidence if min_confidence is not None else settings.RECEIPT_MIN_OCR_CONFIDENCE
        )
        self.min_similarity = (
            min_similarity if min_similarity is not None else settings.RECEIPT_BRAND_SIMILARITY
        )

    def score(self, receipt: ReceiptEvidence, brand_name: str, checkin_date: date) -> ReceiptScore:
        if receipt.brand_name:
            brand_ok = brand_matches(receipt.brand_name, brand_name, self.min_similarity)
        else:
            brand_ok = brand_in_text(receipt.text, brand_name)
        date_ok = (
            receipt.purchase_date is not None
            and abs((receipt.purchase_date - checkin_date).days) <= 1
        )
        amount_ok = receipt.total_amount is not None and receipt.total_amount > 0
        confidence_ok = receipt.ocr_confidence >= self.min_confidence

        verified = brand_ok and date_ok and amount_ok and confidence_ok
        return ReceiptScore(
            score=self.bonus if verified else 0,
            verified=verified,
            brand_matched=brand_ok,
            date_valid=date_ok,
            amount_valid=amount_ok,
            confidence_ok=confidence_ok
        )


class CheckinEvaluator:
    """
    Combines GPS, code and receipt scores into one verdict.

    total = min(100, round(gps * gps_weight/100 + qr * qr_weight/100 + receipt_bonus))
    """

    def __init__(
        self,
        geo_scorer: GeoScorer = None,
        code_scorer: CodeScorer = None,
        receipt_scorer: ReceiptScorer = None,
        gps_weight: int = None,
        qr_weight: int = None,
        pass_threshold: int = None
    ):
        self.geo_scorer = geo_scorer or GeoScorer()
        self.code_scorer = code_scorer or CodeScorer()
        self.receipt_scorer = receipt_scorer or ReceiptScorer()
        self.gps_weight = gps_weight if gps_weight is not None else settings.CHECKIN_GPS_WEIGHT
        self.qr_weight = qr_weight if qr_weight is not None else settings.CHECKIN_QR_WEIGHT
        self.pass_threshold = (
            pass_threshold if pass_threshold is not None else settings.CHECKIN_PASS_THRESHOLD
        )

    def evaluate(
        self,
        request: CheckinRequest,
        popup_location: Coordinates,
        brand_name: str,
        active_codes: List[ActiveCode],
        now: datetime,
        code_already_used: bool = False
    ) -> CheckinResult:
        now = as_utc(now)
        gps = self.geo_scorer.score(popup_location, request.user_location, request.accuracy_meters)
        qr = self.code_scorer.score(request.qr_code, active_codes, now, code_already_used)
        receipt = (
            self.receipt_scorer.score(request.receipt, brand_name, now.date())
            if request.receipt is not None else None
        )

        gps_points = gps.score * self.gps_weight / 100
        qr_points = qr.score * self.qr_weight / 100
        receipt_points = receipt.score if receipt else 0
        total = min(100, int(math.floor(gps_points + qr_points + receipt_points + 0.5)))

        passed = total >= self.pass_threshold and not code_already_used

        failure_reasons: List[str] = []
        if not passed:
            if request.user_location is None:
                failure_reasons.append("location_missing")
            elif gps.score == 0:
                failure_reasons.append("location_out_of_range")
            if qr.reason:
                failure_reasons.append(qr.reason)
            if receipt is not None and not receipt.verified:
                failure_reasons.append("receipt_unverified")
            if not failure_reasons:
                failure_reasons.append("score_below_threshold")

        return CheckinResult(
            record_id=f"checkin-{uuid.uuid4().hex}",
            popup_id=request.popup_id,
            passed=passed,
            total_score=total,
            breakdown=CheckinBreakdown(
                gps=gps,
                qr=qr,
                receipt=receipt,
                gps_points=round(gps_points, 2),
                qr_points=round(qr_points, 2),
                receipt_points=receipt_points,
                threshold=self.pass_threshold
            ),
            failure_reasons=failure_reasons,
            summary_badge=self._summary_badge(total, passed),
            reward_badge=self._reward_badge(total, passed),
            verified_at=now
        )

    @staticmethod
    def _summary_badge(total: int, passed: bool) -> str:
        if passed and total >= SUCCESS_BADGE_MIN:
            return "success"
        return "partial" if passed else "fail"

    @staticmethod
    def _reward_badge(total: int, passed: bool) -> str:
        if not passed:
            return "none"
        for minimum, badge in REWARD_BADGES:
            if total >= minimum:
                return badge
        return "bronze"


class AttendanceVerificationService:
    """
    Check-in verification backed by the popup table and the code store.

    One record is written per attempt, pass or fail.
    """

    def __init__(self, evaluator: CheckinEvaluator = None):
        self.evaluator = evaluator or CheckinEvaluator()

    def verify(
        self,
        db: Session,
        request: CheckinRequest,
        code_store: CodeStore,
        now: datetime
    ) -> CheckinResult:
        popup = db.query(Popup).filter(Popup.id == request.popup_id).first()
        if not popup:
            raise NotFoundError(f"Popup not found: {request.popup_id}", {"popup_id": request.popup_id})
        if popup.status not in CHECKIN_OPEN_STATUSES:
            raise ValidationError(
                f"Popup {popup.id} is not open for check-in (status={popup.status})",
                {"popup_id": popup.id, "status": popup.status}
            )

        code_hash = hash_code(request.qr_code.strip()) if request.qr_code else None
        already_used = bool(code_hash) and self._code_used(db, popup.id, request.user_id, code_hash)

        result = self.evaluator.evaluate(
            request=request,
            popup_location=Coordinates(latitude=popup.latitude, longitude=popup.longitude),
            brand_name=popup.brand_name,
            active_codes=code_store.active_codes(popup.id),
            now=now,
            code_already_used=already_used
        )

        self._log_checkin(db, request, result, code_hash)
        logger.info(
            f"Check-in {result.record_id} popup={popup.id} user={request.user_id} "
            f"total={result.total_score} passed={result.passed} reasons={result.failure_reasons}"
        )
        return result

    @staticmethod
    def _code_used(db: Session, popup_id: str, user_id: str, code_hash: str) -> bool:
        return db.query(CheckinAttempt.id).filter(
            CheckinAttempt.popup_id == popup_id,
            CheckinAttempt.user_id == user_id,
            CheckinAttempt.code_hash == code_hash,
            CheckinAttempt.passed.is_(True)
        ).first() is not None

    def _log_checkin(
        self,
        db: Session,
        request: CheckinRequest,
        result: CheckinResult,
        code_hash: Optional[str]
    ) -> None:
        precision = settings.GPS_STORED_PRECISION
        location = request.user_location
        evidence = CheckinEvidence(
            user_latitude=round(location.latitude, precision) if location else None,
            user_longitude=round(location.longitude, precision) if location else None,
            distance_m=result.breakdown.gps.distance_m,
            accuracy_m=request.accuracy_meters,
            code_hash=code_hash,
            receipt_submitted=request.receipt is not None
        )
        breakdown = result.breakdown
        db.add(CheckinAttempt(
            id=result.record_id,
            popup_id=request.popup_id,
            user_id=request.user_id,
            gps_score=breakdown.gps.score,
            qr_score=breakdown.qr.score,
            receipt_score=breakdown.receipt_points,
            total_score=result.total_score,
            passed=result.passed,
            code_hash=code_hash,
            evidence=evidence.model_dump(mode="json"),
            created_at=result.verified_at
        ))
        db.commit()

    def get_checkin_history(
        self,
        db: Session,
        popup_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 50
    ) -> List[CheckinRecord]:
        """Stored attempts, newest first."""
        query = db.query(CheckinAttempt)
        if popup_id:
            query = query.filter(CheckinAttempt.popup_id == popup_id)
        if user_id:
            query = query.filter(CheckinAttempt.user_id == user_id)

        rows = query.order_by(CheckinAttempt.created_at.desc()).limit(limit).all()
        return [
            CheckinRecord(
                id=row.id,
                popup_id=row.popup_id,
                user_id=row.user_id,
                gps_score=row.gps_score,
                qr_score=row.qr_score,
                receipt_score=row.receipt_score,
                total_score=row.total_score,
                passed=row.passed,
                evidence=CheckinEvidence.model_validate(row.evidence),
                created_at=as_utc(row.created_at)
            )
            for row in rows
        ]


# Singleton instance
attendance_verification_service = AttendanceVerificationService()
