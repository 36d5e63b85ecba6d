"""
Tests for the emergency endpoints — triggers, lifecycle and escalation.
"""

import time

import pytest
from starlette.websockets import WebSocketDisconnect


def panic(client, patient_id="PT-100"):
    return client.post("/api/emergency/panic-button", json={"patient_id": patient_id})


# ────────────────────────────── Triggers ────────────────────────────


class TestTriggers:

    def test_panic_button(self, test_client):
        resp = panic(test_client)
        assert resp.status_code == 201
        data = resp.json()
        assert data["created"] is True
        case = data["case"]
        assert case["trigger_type"] == "panic_button"
        assert case["severity"] == "critical"
        assert case["priority"] == "immediate"
        assert case["response"]["assigned_to"] == "DR-A"
        assert case["external_services"]["emergency_services"]["contacted"] is True
        assert case["external_services"]["family_contacted"][0]["name"] == "Byron"

    def test_second_trigger_joins_open_case(self, test_client):
        first = panic(test_client).json()
        second = test_client.post(
            "/api/emergency/cases",
            json={
                "patient_id": "PT-100",
                "severity": "high",
                "priority": "urgent",
                "description": "Carer reports confusion",
                "triggered_by": "carer-1",
            },
        ).json()
        assert second["created"] is False
        assert second["case"]["case_id"] == first["case"]["case_id"]

    @pytest.mark.parametrize("confidence,severity,priority", [
        (0.95, "critical", "immediate"),
        (0.6, "high", "urgent"),
    ])
    def test_fall_detection(self, test_client, confidence, severity, priority):
        resp = test_client.post(
            "/api/emergency/fall-detection",
            json={
                "patient_id": "PT-200",
                "device_id": "pendant-3",
                "confidence": confidence,
                "impact_force": 2.5,
            },
        )
        assert resp.status_code == 201
        case = resp.json()["case"]
        assert case["severity"] == severity
        assert case["priority"] == priority
        assert "pendant-3" in case["description"]

    def test_fall_confidence_out_of_range(self, test_client):
        resp = test_client.post(
            "/api/emergency/fall-detection",
            json={"patient_id": "PT-200", "device_id": "pendant-3", "confidence": 1.5},
        )
        assert resp.status_code == 422

    def test_unknown_patient(self, test_client):
        resp = panic(test_client, patient_id="PT-NOPE")
        assert resp.status_code == 404


# ────────────────────────────── Lifecycle ───────────────────────────


class TestLifecycle:

    def test_full_lifecycle(self, test_client):
        case_id = panic(test_client).json()["case"]["case_id"]

        ack = test_client.post(
            f"/api/emergency/cases/{case_id}/acknowledge",
            json={"user_id": "DR-A", "note": "Calling patient"},
        )
        assert ack.status_code == 200
        assert ack.json()["case"]["status"] == "acknowledged"

        respond = test_client.post(
            f"/api/emergency/cases/{case_id}/respond",
            json={"responder_id": "DR-A", "estimated_arrival": "2030-01-01T10:00:00Z"},
        )
        assert respond.json()["case"]["status"] == "responding"

        resolved = test_client.post(
            f"/api/emergency/cases/{case_id}/resolve",
            json={
                "user_id": "DR-A",
                "outcome": "transported_hospital",
                "hospital_transport": {"required": True, "hospital": "St Thomas"},
            },
        ).json()["case"]
        assert resolved["status"] == "resolved"
        assert resolved["metrics"]["response_time_seconds"] is not None
        assert resolved["metrics"]["escalation_count"] == 0
        assert resolved["metrics"]["communications_sent"] >= 3

        timeline = test_client.get(f"/api/emergency/cases/{case_id}/timeline").json()["timeline"]
        sequences = [e["sequence"] for e in timeline]
        assert sequences == sorted(sequences)
        assert timeline[-1]["event"] == "Case resolved"

        assert test_client.get("/api/emergency/cases/active").json()["count"] == 0

    def test_resolve_twice_conflicts(self, test_client):
        case_id = panic(test_client).json()["case"]["case_id"]
        body = {"user_id": "DR-A", "outcome": "false_alarm"}
        first = test_client.post(f"/api/emergency/cases/{case_id}/resolve", json=body)
        assert first.json()["case"]["status"] == "false_alarm"

        second = test_client.post(f"/api/emergency/cases/{case_id}/resolve", json=body)
        assert second.status_code == 409
        assert second.json()["error"]["kind"] == "state_conflict"

    def test_assign(self, test_client):
        case_id = panic(test_client).json()["case"]["case_id"]
        resp = test_client.post(
            f"/api/emergency/cases/{case_id}/assign",
            json={"responder_id": "RN-B", "assigned_by": "SUP-C"},
        )
        assert resp.json()["case"]["response"]["assigned_to"] == "RN-B"

        missing = test_client.post(
            f"/api/emergency/cases/{case_id}/assign",
            json={"responder_id": "NOBODY"},
        )
        assert missing.status_code == 404

    def test_get_case_includes_communications(self, test_client):
        case_id = panic(test_client).json()["case"]["case_id"]
        data = test_client.get(f"/api/emergency/cases/{case_id}").json()
        assert data["case"]["case_id"] == case_id
        recipients = {c["recipient"] for c in data["communications"]}
        assert "DR-A" in recipients
        assert "contact:+447700900001" in recipients

    def test_unknown_case(self, test_client):
        assert test_client.get("/api/emergency/cases/EMRG-0-XXXX").status_code == 404
        resp = test_client.post(
            "/api/emergency/cases/EMRG-0-XXXX/acknowledge", json={"user_id": "DR-A"},
        )
        assert resp.status_code == 404

    def test_patient_case_history(self, test_client):
        case_id = panic(test_client).json()["case"]["case_id"]
        test_client.post(
            f"/api/emergency/cases/{case_id}/resolve",
            json={"user_id": "DR-A", "outcome": "patient_stable"},
        )
        panic(test_client)

        data = test_client.get("/api/emergency/patients/PT-100/cases").json()
        assert data["count"] == 2

    def test_active_filters(self, test_client):
        panic(test_client)
        test_client.post(
            "/api/emergency/fall-detection",
            json={"patient_id": "PT-200", "device_id": "d", "confidence": 0.5},
        )
        data = test_client.get("/api/emergency/cases/active", params={"severity": "high"}).json()
        assert data["count"] == 1
        assert data["cases"][0]["patient_id"] == "PT-200"

    def test_status(self, test_client):
        data = test_client.get("/api/emergency/status").json()
        assert data["status"] == "ok"
        assert "websocket" in data["registered_channels"]


# ────────────────────────────── Escalation ──────────────────────────


class TestEscalation:

    def test_unacknowledged_case_escalates(self, fast_client):
        case_id = panic(fast_client).json()["case"]["case_id"]
        time.sleep(1.0)

        case = fast_client.get(f"/api/emergency/cases/{case_id}").json()["case"]
        assert case["escalation"]["level"] == 5
        assert [h["level"] for h in case["escalation"]["history"]] == [2, 3, 4, 5]

    def test_primary_ack_stops_escalation(self, fast_client):
        case_id = panic(fast_client).json()["case"]["case_id"]
        fast_client.post(f"/api/emergency/cases/{case_id}/acknowledge", json={"user_id": "DR-A"})
        time.sleep(0.8)

        case = fast_client.get(f"/api/emergency/cases/{case_id}").json()["case"]
        assert case["escalation"]["history"] == []
        assert case["escalation"]["level"] == 1


# ────────────────────────────── Topics ──────────────────────────────


class TestTopicStream:
    """WS /ws/topics/{topic}"""

    def test_global_topic_receives_case_created(self, test_client):
        with test_client.websocket_connect("/ws/topics/global") as ws:
            case_id = panic(test_client).json()["case"]["case_id"]
            event = ws.receive_json()
        assert event["event_type"] == "case_created"
        assert event["payload"]["case_id"] == case_id

    def test_role_topic_receives_assignment(self, test_client):
        with test_client.websocket_connect("/ws/topics/role:DR-A") as ws:
            panic(test_client)
            event = ws.receive_json()
        assert event["event_type"] == "notification"
        assert event["payload"]["notification_type"] == "emergency_assignment"

    def test_unknown_topic_closed(self, test_client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws/topics/everything") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008
