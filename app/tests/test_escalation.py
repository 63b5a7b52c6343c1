from stubs import make_result
from ruraldoc.escalation import EmergencyEscalator
from ruraldoc.schemas import DEMO_PROFILE


def test_payload_targets_emergency_contact():
    result = make_result(
        is_emergency=True,
        risk_level="EMERGENCY",
        risk_level_translated="आपातकाल",
        explanation="Signs of a stroke.",
        language="hi",
    )
    symptoms = "face drooping on one side and slurred speech since ten minutes ago"

    payload = EmergencyEscalator().build(DEMO_PROFILE, result, symptoms=symptoms, location_hint="19.99,73.78")

    assert payload.profile_id == "demo_1"
    assert payload.speech_text == "आपातकाल. Signs of a stroke."
    assert payload.speech_locale == "hi-IN"
    assert payload.message.recipient_name == "Emergency"
    assert payload.message.recipient_number == "9999999999"
    assert payload.message.body.startswith("EMERGENCY ALERT: Demo Patient (Age 45) needs help!")
    assert f"Symptoms: {symptoms[:50]}..." in payload.message.body
    assert "Risk: EMERGENCY" in payload.message.body
    assert payload.message.body.endswith("Loc: 19.99,73.78")
    assert [(q.intent, q.location_hint) for q in payload.nearby_help] == [
        ("hospital", "19.99,73.78"),
        ("pharmacy", "19.99,73.78"),
    ]


def test_payload_without_profile_or_location():
    result = make_result(is_emergency=True)

    payload = EmergencyEscalator().build(None, result, symptoms="bleeding")

    assert payload.message.recipient_number == ""
    assert "Patient (Age ?)" in payload.message.body
    assert payload.message.body.endswith("Loc: Unknown")
    assert payload.speech_locale == "en-US"


def test_nearby_help_only_above_low_risk():
    escalator = EmergencyEscalator()

    assert escalator.nearby_help(make_result(risk_level="LOW"), "Pune") == []
    offered = escalator.nearby_help(make_result(risk_level="HIGH"), "   ")
    assert [q.intent for q in offered] == ["hospital", "pharmacy"]
    assert offered[0].location_hint is None
