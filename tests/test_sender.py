"""Unit tests for the reqtest sender."""

import urllib.error
import urllib.request
from unittest.mock import MagicMock, patch

import pytest

from reqtest.sender import (
    BodyPreservingRedirectHandler,
    PayloadSender,
    SendError,
    DEFAULT_START_STEP,
    DEFAULT_END_STEP,
    make_payload,
    payload_sizes,
    quote_url,
    resolve_steps,
)


def _ok_response(status=200):
    """Build a mock opener.open() result usable as a context manager."""
    resp = MagicMock()
    resp.status = status
    resp.read.return_value = b""
    cm = MagicMock()
    cm.__enter__.return_value = resp
    cm.__exit__.return_value = False
    return cm


class TestResolveSteps:
    """Tests for start/end step validation."""

    def test_defaults(self):
        assert resolve_steps(None, None) == (DEFAULT_START_STEP, DEFAULT_END_STEP)
        assert resolve_steps(None, None) == (1, 25)

    def test_explicit_values(self):
        assert resolve_steps(10, 20) == (10, 20)

    def test_start_equals_end(self):
        assert resolve_steps(5, 5) == (5, 5)

    def test_non_positive_values_fall_back_to_defaults(self):
        assert resolve_steps(0, 0) == (1, 25)
        assert resolve_steps(-3, 12) == (1, 12)

    def test_max_step_allowed(self):
        assert resolve_steps(31, 31) == (31, 31)

    def test_start_step_too_large(self):
        with pytest.raises(SendError, match="start-step cannot be greater than 31"):
            resolve_steps(32, None)

    def test_end_step_too_large(self):
        with pytest.raises(SendError, match="end-step cannot be greater than 31"):
            resolve_steps(None, 40)

    def test_end_before_start(self):
        with pytest.raises(SendError, match="end-step cannot be less than start-step"):
            resolve_steps(10, 5)

    def test_start_after_default_end(self):
        """A start above the default end needs an explicit end step."""
        with pytest.raises(SendError, match="end-step cannot be less than start-step"):
            resolve_steps(26, None)


class TestPayloads:
    """Tests for payload size sequence and payload generation."""

    def test_payload_sizes_are_powers_of_two(self):
        assert list(payload_sizes(1, 5)) == [2, 4, 8, 16, 32]

    def test_payload_sizes_single_step(self):
        assert list(payload_sizes(7, 7)) == [128]

    def test_payload_sizes_default_range(self):
        sizes = list(payload_sizes(1, 25))
        assert sizes[0] == 2
        assert sizes[-1] == 2 ** 25
        assert len(sizes) == 25

    def test_make_payload_length(self):
        for size in (2, 64, 4096):
            assert len(make_payload(size)) == size

    def test_make_payload_is_hex(self):
        payload = make_payload(256)
        int(payload, 16)
        assert payload == payload.lower()

    def test_make_payload_is_random(self):
        assert make_payload(64) != make_payload(64)


class TestSendPayload:
    """Tests for a single PUT request."""

    def test_send_success(self):
        sender = PayloadSender("http://localhost:8080/upload")

        with patch.object(sender.opener, "open", return_value=_ok_response()) as mock_open:
            result = sender.send_payload(1024)

        assert result["bytes"] == 1024
        assert result["status"] == 200
        assert result["elapsed"] >= 0

        request = mock_open.call_args[0][0]
        assert isinstance(request, urllib.request.Request)
        assert request.get_method() == "PUT"
        assert request.full_url == "http://localhost:8080/upload"
        assert len(request.data) == 1024
        assert mock_open.call_args[1]["timeout"] is None

    def test_send_non_200_success_status(self):
        sender = PayloadSender("http://localhost:8080/")

        with patch.object(sender.opener, "open", return_value=_ok_response(204)):
            with pytest.raises(SendError, match="did not get 200 response, got 204"):
                sender.send_payload(2)

    def test_send_http_error(self):
        sender = PayloadSender("http://localhost:8080/")
        error = urllib.error.HTTPError("http://localhost:8080/", 413, "Payload Too Large", None, None)

        with patch.object(sender.opener, "open", side_effect=error):
            with pytest.raises(SendError, match="did not get 200 response, got 413"):
                sender.send_payload(2)

    def test_send_transport_error(self):
        sender = PayloadSender("http://localhost:8080/")
        error = urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))

        with patch.object(sender.opener, "open", side_effect=error):
            with pytest.raises(SendError, match="could not execute request"):
                sender.send_payload(2)

    def test_send_connection_reset(self):
        sender = PayloadSender("http://localhost:8080/")

        with patch.object(sender.opener, "open", side_effect=ConnectionResetError("reset")):
            with pytest.raises(SendError, match="could not execute request"):
                sender.send_payload(2)

    def test_send_invalid_url(self):
        sender = PayloadSender("not a url")

        with pytest.raises(SendError, match="could not make request"):
            sender.send_payload(2)

    def test_invalid_steps_raise_on_construction(self):
        with pytest.raises(SendError):
            PayloadSender("http://localhost:8080/", start_step=20, end_step=10)


class TestRun:
    """Tests for the full send loop."""

    def test_run_sends_every_size(self):
        sender = PayloadSender("http://localhost:8080/", start_step=3, end_step=6)

        with patch.object(sender.opener, "open", side_effect=lambda *a, **kw: _ok_response()) as mock_open:
            results = sender.run()

        assert [r["bytes"] for r in results] == [8, 16, 32, 64]
        sent = [len(call[0][0].data) for call in mock_open.call_args_list]
        assert sent == [8, 16, 32, 64]

    def test_run_stops_at_first_failure(self):
        sender = PayloadSender("http://localhost:8080/", start_step=1, end_step=10)
        error = urllib.error.HTTPError("http://localhost:8080/", 502, "Bad Gateway", None, None)

        with patch.object(
            sender.opener, "open",
            side_effect=[_ok_response(), _ok_response(), error],
        ) as mock_open:
            with pytest.raises(SendError, match="got 502"):
                sender.run()

        assert mock_open.call_count == 3
        assert [r["bytes"] for r in sender.results] == [2, 4]

    def test_run_logs_each_size(self, caplog):
        sender = PayloadSender("http://localhost:8080/", start_step=1, end_step=2)

        with caplog.at_level("INFO", logger="reqtest"):
            with patch.object(sender.opener, "open", side_effect=lambda *a, **kw: _ok_response()):
                sender.run()

        assert "sending 2 bytes" in caplog.text
        assert "sending 4 bytes" in caplog.text


class TestQuoteUrl:
    """Tests for percent-encoding target URLs."""

    def test_plain_url_unchanged(self):
        url = "http://localhost:8080/upload?size=2&x=1#frag"
        assert quote_url(url) == url

    def test_non_ascii_path(self):
        assert quote_url("http://localhost:8080/ü") == "http://localhost:8080/%C3%BC"

    def test_spaces_in_query(self):
        assert quote_url("http://localhost:8080/a b?q=x y") == "http://localhost:8080/a%20b?q=x%20y"

    def test_already_encoded_not_double_encoded(self):
        url = "http://localhost:8080/%C3%BC"
        assert quote_url(url) == url

    def test_ipv6_host_untouched(self):
        assert quote_url("http://[::1]:8080/ü") == "http://[::1]:8080/%C3%BC"

    def test_send_non_ascii_url(self):
        sender = PayloadSender("http://localhost:8080/ü")

        with patch.object(sender.opener, "open", return_value=_ok_response()) as mock_open:
            sender.send_payload(2)

        assert mock_open.call_args[0][0].full_url == "http://localhost:8080/%C3%BC"

    def test_unicode_error_becomes_send_error(self):
        sender = PayloadSender("http://localhost:8080/")
        error = UnicodeEncodeError("ascii", "ü", 0, 1, "ordinal not in range(128)")

        with patch.object(sender.opener, "open", side_effect=error):
            with pytest.raises(SendError, match="could not make request"):
                sender.send_payload(2)


class TestRedirects:
    """Tests for following redirects of PUT requests."""

    def _put(self, url="http://localhost:8080/old"):
        return urllib.request.Request(
            url,
            data=b"abcd",
            method="PUT",
            headers={"Content-Type": "application/octet-stream"},
        )

    @pytest.mark.parametrize("code", [307, 308])
    def test_put_is_resent(self, code):
        handler = BodyPreservingRedirectHandler()

        new = handler.redirect_request(self._put(), None, code, "Redirect", {}, "http://localhost:9090/new")

        assert new.get_method() == "PUT"
        assert new.full_url == "http://localhost:9090/new"
        assert new.data == b"abcd"
        assert new.get_header("Content-type") == "application/octet-stream"

    @pytest.mark.parametrize("code", [301, 302, 303])
    def test_other_redirects_fail_for_put(self, code):
        handler = BodyPreservingRedirectHandler()

        with pytest.raises(urllib.error.HTTPError):
            handler.redirect_request(self._put(), None, code, "Redirect", {}, "http://localhost:9090/new")

    def test_sender_uses_redirect_handler(self):
        sender = PayloadSender("http://localhost:8080/")

        assert any(isinstance(h, BodyPreservingRedirectHandler) for h in sender.opener.handlers)
