"""
Tests for the responder directory — ranking, availability and role lookup.
"""

import json

import pytest

from careline.alerting.errors import NotFoundError
from careline.alerting.responders import InMemoryResponderDirectory, Responder


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Ranking
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRanking:

    def test_most_experienced_first(self, responders):
        ranked = [r.responder_id for r in responders.rank_available()]
        assert ranked == ["DR-SENIOR", "DR-MID", "RN-1", "RN-2", "RN-3"]

    def test_unavailable_excluded(self, responders):
        ranked = [r.responder_id for r in responders.rank_available()]
        assert "SUP-1" not in ranked

    def test_unverified_excluded(self):
        directory = InMemoryResponderDirectory([
            Responder(responder_id="A", experience_years=30, verified=False),
            Responder(responder_id="B", experience_years=2),
        ])
        assert [r.responder_id for r in directory.rank_available()] == ["B"]

    def test_ties_keep_registration_order(self):
        directory = InMemoryResponderDirectory([
            Responder(responder_id="FIRST", experience_years=5),
            Responder(responder_id="SECOND", experience_years=5),
        ])
        assert [r.responder_id for r in directory.rank_available()] == ["FIRST", "SECOND"]

    def test_set_available_changes_ranking(self, responders):
        responders.set_available("DR-SENIOR", False)
        assert responders.rank_available()[0].responder_id == "DR-MID"

        responders.set_available("DR-SENIOR", True)
        assert responders.rank_available()[0].responder_id == "DR-SENIOR"

    def test_set_available_unknown_raises(self, responders):
        with pytest.raises(NotFoundError):
            responders.set_available("NOBODY", True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Lookup
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestLookup:

    def test_find_by_role_ignores_availability(self, responders):
        assert [r.responder_id for r in responders.find_by_role("supervisor")] == ["SUP-1"]

    def test_find_by_role_none(self, responders):
        assert responders.find_by_role("department_head") == []

    def test_get_unknown_raises(self, responders):
        with pytest.raises(NotFoundError):
            responders.get("NOBODY")

    def test_find_unknown_returns_none(self, responders):
        assert responders.find("NOBODY") is None

    def test_channels_follow_contact_details(self):
        bare = Responder(responder_id="X")
        full = Responder(responder_id="Y", phone="+15550100", email="y@example.org")
        assert bare.channels == ["websocket"]
        assert full.channels == ["websocket", "sms", "email"]

    def test_load_file(self, tmp_path):
        path = tmp_path / "responders.json"
        path.write_text(json.dumps([
            {"responder_id": "DR-X", "experience_years": 8, "phone": "+15550101"},
            {"responder_id": "SUP-Y", "roles": ["supervisor"]},
        ]))
        directory = InMemoryResponderDirectory()

        assert directory.load_file(str(path)) == 2
        assert directory.get("DR-X").channels == ["websocket", "sms"]
        assert directory.get("SUP-Y").roles == ["supervisor"]
        assert directory.get("SUP-Y").available is True
