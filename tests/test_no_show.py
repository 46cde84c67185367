from popup_engine.schemas.fraud import NoShowFactors
from popup_engine.services.no_show_service import MODEL_VERSION, no_show_service


def test_first_time_participant_is_medium_risk():
    prediction = no_show_service.predict(NoShowFactors())
    assert 0.2 <= prediction.no_show_probability < 0.4
    assert prediction.risk_level == "medium"
    assert prediction.model_version == MODEL_VERSION
    assert "send_reminders" in prediction.recommendations


def test_committed_regular_is_low_risk():
    prediction = no_show_service.predict(NoShowFactors(
        total_participations=12, deposit_paid=True, hours_until_event=72
    ))
    assert prediction.risk_level == "low"
    assert prediction.recommendations == []


def test_history_of_no_shows_is_high_risk():
    prediction = no_show_service.predict(NoShowFactors(
        past_no_show_rate=0.8, total_participations=10, is_free=True
    ))
    assert prediction.risk_level == "high"
    assert prediction.factors[0].name == "high_no_show_history"
    assert "overbook_capacity" in prediction.recommendations
    assert "require_deposit" in prediction.recommendations


def test_probabilities_complement():
    prediction = no_show_service.predict(NoShowFactors(late_cancellation_rate=0.5))
    assert 0.0 <= prediction.no_show_probability <= 1.0
    assert round(prediction.no_show_probability + prediction.expected_show_probability, 4) == 1.0


def test_distance_above_typical_raises_risk():
    near = no_show_service.predict(NoShowFactors(distance_km=5, typical_distance_km=5))
    far = no_show_service.predict(NoShowFactors(distance_km=20, typical_distance_km=5))
    assert far.no_show_probability > near.no_show_probability


def test_forecast_for_funding_round():
    participants = [
        NoShowFactors(total_participations=12, deposit_paid=True),
        NoShowFactors(past_no_show_rate=0.9, total_participations=10),
        NoShowFactors(),
    ]
    forecast = no_show_service.forecast(participants)
    assert forecast.participants == 3
    assert forecast.high_risk_count == 1
    assert 0 < forecast.expected_no_show_rate < 1
    assert forecast.expected_attendance == 2


def test_forecast_without_participants():
    forecast = no_show_service.forecast([])
    assert forecast.participants == 0
    assert forecast.expected_attendance == 0
