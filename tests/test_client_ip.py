"""Tests for client address extraction."""

from bucketguard.core.client_ip import get_client_ip


class TestGetClientIp:
    """Tests for header and peer address priority."""

    def test_real_ip_header_wins(self, make_request):
        request = make_request(
            headers={"x-real-ip": "203.0.113.7", "x-forwarded-for": "10.0.0.1"},
            host="127.0.0.1",
        )
        assert get_client_ip(request) == "203.0.113.7"

    def test_first_forwarded_for_entry(self, make_request):
        request = make_request(headers={"x-forwarded-for": " 10.0.0.1 , 172.16.0.1"}, host="127.0.0.1")
        assert get_client_ip(request) == "10.0.0.1"

    def test_falls_back_to_peer_address(self, make_request):
        assert get_client_ip(make_request(host="192.168.1.10")) == "192.168.1.10"

    def test_empty_when_unknown(self, make_request):
        assert get_client_ip(make_request()) == ""

    def test_empty_headers_ignored(self, make_request):
        request = make_request(headers={"x-real-ip": "", "x-forwarded-for": ""}, host="::1")
        assert get_client_ip(request) == "::1"
