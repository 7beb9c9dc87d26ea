"""Send PUT requests with exponentially growing random payloads."""

import http.client
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger("reqtest")

# Payload sizes are powers of two: 2^start-step .. 2^end-step bytes
DEFAULT_START_STEP = 1
DEFAULT_END_STEP = 25
MAX_STEP = 31


class SendError(Exception):
    """A payload could not be delivered with a 200 response."""


# Characters left alone when percent-encoding the path, query and fragment
_URL_SAFE = "/?#[]@!$&'()*+,;=:%~"


def quote_url(url: str) -> str:
    """Percent-encode non-ASCII and unsafe characters outside the host part."""
    parts = urllib.parse.urlsplit(url)
    return urllib.parse.urlunsplit(parts._replace(
        path=urllib.parse.quote(parts.path, safe=_URL_SAFE),
        query=urllib.parse.quote(parts.query, safe=_URL_SAFE),
        fragment=urllib.parse.quote(parts.fragment, safe=_URL_SAFE),
    ))


class BodyPreservingRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Follow 307/308 redirects for any method, resending the body."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        if code in (307, 308) and req.get_method() not in ("GET", "HEAD"):
            logger.debug(f"following {code} redirect to {newurl}")
            return urllib.request.Request(
                quote_url(newurl),
                data=req.data,
                headers=dict(req.headers),
                origin_req_host=req.origin_req_host,
                unverifiable=True,
                method=req.get_method(),
            )
        return super().redirect_request(req, fp, code, msg, headers, newurl)

    # Only newer Pythons route 308 through the redirect handler
    http_error_308 = urllib.request.HTTPRedirectHandler.http_error_302


def resolve_steps(start_step: Optional[int], end_step: Optional[int]) -> Tuple[int, int]:
    """Validate the step flags. Values <= 0 fall back to the defaults."""
    start = DEFAULT_START_STEP
    end = DEFAULT_END_STEP

    if start_step is not None and start_step > 0:
        if start_step > MAX_STEP:
            raise SendError(f"start-step cannot be greater than {MAX_STEP}")
        start = start_step

    if end_step is not None and end_step > 0:
        if end_step > MAX_STEP:
            raise SendError(f"end-step cannot be greater than {MAX_STEP}")
        end = end_step

    if end < start:
        raise SendError("end-step cannot be less than start-step")

    return start, end


def payload_sizes(start_step: int, end_step: int) -> Iterator[int]:
    size = 1 << start_step
    max_size = 1 << end_step
    while size <= max_size:
        yield size
        size <<= 1


def make_payload(size: int) -> bytes:
    """Return ``size`` bytes of hex text encoding ``size // 2`` random bytes."""
    return os.urandom(size // 2).hex().encode("ascii")


class PayloadSender:
    """Sends one PUT per payload size and stops at the first failure."""

    def __init__(
        self,
        url: str,
        start_step: Optional[int] = None,
        end_step: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url
        self.start_step, self.end_step = resolve_steps(start_step, end_step)
        # None blocks for as long as the server takes
        self.timeout = timeout
        self.results: List[Dict] = []
        self.opener = urllib.request.build_opener(BodyPreservingRedirectHandler)

    def send_payload(self, size: int) -> Dict:
        """PUT a single payload of ``size`` bytes and return the result."""
        payload = make_payload(size)
        try:
            request = urllib.request.Request(
                quote_url(self.url),
                data=payload,
                method="PUT",
                headers={"Content-Type": "application/octet-stream"},
            )
        except ValueError as e:
            raise SendError(f"could not make request: {e}") from e

        t0 = time.monotonic()
        try:
            with self.opener.open(request, timeout=self.timeout) as resp:
                resp.read()
                status = resp.status
        except urllib.error.HTTPError as e:
            raise SendError(f"did not get 200 response, got {e.code}") from e
        except UnicodeError as e:
            raise SendError(f"could not make request: {e}") from e
        except (http.client.HTTPException, OSError) as e:
            raise SendError(f"could not execute request: {e}") from e
        elapsed = time.monotonic() - t0

        if status != 200:
            raise SendError(f"did not get 200 response, got {status}")

        return {"bytes": size, "status": status, "elapsed": elapsed}

    def run(self) -> List[Dict]:
        """Send every payload size in order."""
        for size in payload_sizes(self.start_step, self.end_step):
            logger.info(f"sending {size} bytes")
            result = self.send_payload(size)
            logger.debug(f"got {result['status']} for {size} bytes in {result['elapsed']:.3f}s")
            self.results.append(result)

        total = sum(r["bytes"] for r in self.results)
        logger.info(f"✓ sent {len(self.results)} request(s), {total} bytes total")
        return self.results
