"""Tests for EgressChecker with a stubbed requests session."""

from unittest.mock import MagicMock

import requests

from tailscale_tui.services.egress import ENDPOINTS, EgressChecker


def response(data=None, error=None):
    resp = MagicMock()
    if error is not None:
        resp.raise_for_status.side_effect = error
    resp.json.return_value = data
    return resp


class TestEgressChecker:
    def test_first_endpoint(self):
        session = MagicMock()
        session.get.return_value = response({
            "ip": "203.0.113.7",
            "country": "Germany",
            "city": "Frankfurt",
            "organization_name": "Example Hosting",
        })
        info = EgressChecker(session=session).lookup()
        assert info.ip == "203.0.113.7"
        assert info.describe() == "203.0.113.7 (Frankfurt, Germany) Example Hosting"
        assert session.get.call_args[1]["timeout"] == 5

    def test_falls_back_on_errors(self):
        session = MagicMock()
        session.get.side_effect = [
            requests.ConnectionError("down"),
            response({"status": "success", "query": "198.51.100.4", "country": "Japan", "city": "Tokyo", "isp": "ISP"}),
        ]
        info = EgressChecker(session=session).lookup()
        assert info.ip == "198.51.100.4"
        assert session.get.call_args_list[1][0][0] == ENDPOINTS[1][0]

    def test_all_endpoints_fail(self):
        bad_json = response()
        bad_json.json.side_effect = ValueError("bad json")
        session = MagicMock()
        session.get.side_effect = [
            response(error=requests.HTTPError("503")),
            response(data={"status": "fail"}),
            bad_json,
        ]
        assert EgressChecker(session=session).lookup() is None

    def test_caches_until_invalidated(self):
        session = MagicMock()
        session.get.return_value = response({"ip": "203.0.113.7"})
        checker = EgressChecker(session=session)
        checker.lookup()
        checker.lookup()
        assert session.get.call_count == 1
        checker.invalidate()
        checker.lookup()
        assert session.get.call_count == 2
