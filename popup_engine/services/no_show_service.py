"""
No-Show Prediction Service - Behavioral Forecasting

Estimates the probability that a committed funding participant will NOT
show up at the popup. Used when closing a funding round to size the
expected attendance.

Output: no_show_probability in [0.0, 1.0], risk level, contributing
factors and mitigations.
"""
import logging
import math
from typing import Dict, List

import numpy as np

from popup_engine.schemas.fraud import (
    NoShowFactor, NoShowFactors, NoShowForecast, NoShowPrediction,
)

logger = logging.getLogger(__name__)

# Model version for tracking
MODEL_VERSION = "1.0.0-logistic"

# Feature weights (interpretable logistic regression coefficients)
# Positive weight = increases no-show probability
FEATURE_WEIGHTS = {
    "past_no_show_rate": 2.5,            # Historical no-show rate is strongest predictor
    "late_cancellation_rate": 1.2,
    "is_new_participant": 0.4,
    "is_free": 0.7,                      # Free popups have higher no-show
    "deposit_paid": -0.6,                # Money down = commitment
    "short_notice": 0.3,                 # Committed less than a day before
    "long_advance": -0.2,
    "distance_above_typical": 0.5,
    "reminder_opt_out": 0.3,
}

INTERCEPT = -1.5  # Base log-odds (~18% base no-show rate)

NEW_PARTICIPANT_MAX_HISTORY = 3
SHORT_NOTICE_HOURS = 24
LONG_ADVANCE_HOURS = 168

RISK_LEVELS = [(0.2, "low"), (0.4, "medium")]

# Factor -> (minimum feature value to report, human-readable name)
FACTOR_NAMES = {
    "past_no_show_rate": (0.3, "high_no_show_history"),
    "late_cancellation_rate": (0.2, "late_cancellation_history"),
    "is_new_participant": (0.5, "new_participant"),
    "is_free": (0.5, "free_popup"),
    "short_notice": (0.5, "short_notice_commitment"),
    "distance_above_typical": (0.3, "far_from_usual_area"),
    "reminder_opt_out": (0.5, "reminders_disabled"),
}


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


class NoShowService:
    """
    Logistic no-show model with interpretable weights.

    Pure: the caller supplies the behavioral signals.
    """

    def _extract_features(self, factors: NoShowFactors) -> Dict[str, float]:
        features = {
            "past_no_show_rate": factors.past_no_show_rate,
            "late_cancellation_rate": factors.late_cancellation_rate,
            "is_new_participant": (
                1.0 if factors.total_participations < NEW_PARTICIPANT_MAX_HISTORY else 0.0
            ),
            "is_free": 1.0 if factors.is_free else 0.0,
            "deposit_paid": 1.0 if factors.deposit_paid else 0.0,
            "short_notice": 0.0,
            "long_advance": 0.0,
            "distance_above_typical": 0.0,
            "reminder_opt_out": 0.0 if factors.reminder_opt_in else 1.0,
        }

        hours = factors.hours_until_event
        if hours is not None:
            features["short_notice"] = 1.0 if hours < SHORT_NOTICE_HOURS else 0.0
            features["long_advance"] = 1.0 if hours > LONG_ADVANCE_HOURS else 0.0

        if factors.distance_km is not None and factors.typical_distance_km:
            excess = (factors.distance_km - factors.typical_distance_km) / factors.typical_distance_km
            features["distance_above_typical"] = min(max(0.0, excess), 1.0)

        return features

    def predict(self, factors: NoShowFactors) -> NoShowPrediction:
        features = self._extract_features(factors)

        contributions = {
            name: FEATURE_WEIGHTS[name] * value for name, value in features.items()
        }
        logit = INTERCEPT + sum(contributions.values())
        probability = round(_sigmoid(logit), 4)

        risk_level = "high"
        for limit, level in RISK_LEVELS:
            if probability < limit:
                risk_level = level
                break

        return NoShowPrediction(
            no_show_probability=probability,
            expected_show_probability=round(1 - probability, 4),
            risk_level=risk_level,
            factors=self._get_top_risk_factors(features, contributions),
            recommendations=self._recommendations(factors, risk_level),
            model_version=MODEL_VERSION
        )

    def _get_top_risk_factors(
        self,
        features: Dict[str, float],
        contributions: Dict[str, float]
    ) -> List[NoShowFactor]:
        """Risk-raising factors above their reporting threshold, largest impact first"""
        factors = [
            NoShowFactor(
                name=label,
                value=round(features[key], 4),
                impact=round(contributions[key], 4)
            )
            for key, (threshold, label) in FACTOR_NAMES.items()
            if features[key] >= threshold
        ]
        factors.sort(key=lambda f: f.impact, reverse=True)
        return factors[:5]

    @staticmethod
    def _recommendations(factors: NoShowFactors, risk_level: str) -> List[str]:
        recommendations = []
        if risk_level == "low":
            return recommendations
        if not factors.deposit_paid:
            recommendations.append("require_deposit")
        recommendations.append("send_reminders")
        if risk_level == "high":
            recommendations.append("overbook_capacity")
        return recommendations

    def forecast(self, participants: List[NoShowFactors]) -> NoShowForecast:
        """Expected attendance for a funding round"""
        if not participants:
            return NoShowForecast(
                participants=0,
                expected_no_show_rate=0.0,
                expected_attendance=0,
                high_risk_count=0
            )

        predictions = [self.predict(p) for p in participants]
        probabilities = np.array([p.no_show_probability for p in predictions])
        expected_no_shows = float(np.sum(probabilities))

        forecast = NoShowForecast(
            participants=len(participants),
            expected_no_show_rate=round(float(np.mean(probabilities)), 4),
            expected_attendance=int(round(len(participants) - expected_no_shows)),
            high_risk_count=sum(1 for p in predictions if p.risk_level == "high")
        )
        logger.info(
            f"No-show forecast: {forecast.participants} participants, "
            f"expected attendance {forecast.expected_attendance}"
        )
        return forecast


# Singleton instance
no_show_service = NoShowService()
