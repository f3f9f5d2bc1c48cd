import argparse
import json
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple
from urllib.parse import quote, urlparse

import pytz
import requests
import urllib3
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Portal certificates are commonly self-signed; verification is off for every portal call.
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# -------------------------------------------------------------------------
# DEVICE EMULATION PROFILE
# -------------------------------------------------------------------------
DEVICE_USER_AGENT = (
    "Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 (KHTML, like Gecko) "
    "MAG200 stbapp ver: 2 rev: 250 Safari/533.3"
)
DEVICE_CAPABILITY = "Model: MAG250; Link: WiFi"
STB_TYPE = "MAG250"
FIRMWARE_VERSION = (
    "ImageDescription: 0.2.18-r14-250; ImageDate: Fri Jan 15 15:20:44 EET 2016; "
    "PORTAL version: 5.1.0; API Version: JS"
)
PLACEHOLDER_SERIAL = "0000000000000"
DEFAULT_TIMEZONE = "Europe/London"

CONTROL_SCRIPTS = ("load.php", "portal.php")
SERVER_SCRIPT = "/server/load.php"
STREAM_SCHEMES = ("http", "rtmp", "rtsp")
LINK_FAULT = "link_fault"
BLOCKED_STATUS = 884
BLOCKED_MARKER = "Error 884"

FFMPEG_PREFIX = re.compile(r"^ffmpeg\s*", re.IGNORECASE)
DUPLICATE_SLASHES = re.compile(r"([^:]/)/+")


# -------------------------------------------------------------------------
# CUSTOM EXCEPTIONS
# -------------------------------------------------------------------------
class StalkerPortalError(Exception):
    """Base exception for portal errors."""
    category = "portal_error"

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class NetworkError(StalkerPortalError):
    """Timeout or connection failure talking to the portal."""
    category = "network_error"


class UpstreamError(StalkerPortalError):
    """The portal answered, but not with something usable."""
    category = "upstream_error"


class AuthRejected(UpstreamError):
    """403 from the portal."""
    category = "auth_rejected"


class UpstreamBlocked(UpstreamError):
    """The provider deliberately blocks this client (non-standard 884 signature)."""
    category = "provider_blocked"


class MalformedResponse(UpstreamError):
    """Body is not JSON or lacks the expected structure."""
    category = "malformed_response"


class MissingToken(StalkerPortalError):
    """An authenticated call was attempted without a session token."""
    category = "missing_token"


class StreamUnavailable(StalkerPortalError):
    """The portal reported the channel as offline (link_fault)."""
    category = "stream_unavailable"


class LinkResolutionFailed(StalkerPortalError):
    """create_link produced nothing playable."""
    category = "link_resolution_failed"


class HandshakeExhausted(StalkerPortalError):
    """Every candidate endpoint failed the handshake."""
    category = "handshake_exhausted"

    def __init__(self, message: str, last_error: Optional[Exception] = None):
        status = getattr(last_error, "status", None)
        body = getattr(last_error, "body", None)
        super().__init__(message, status=status, body=body)
        self.last_error = last_error


class HandshakeCancelled(HandshakeExhausted):
    """Probing stopped early because the deadline passed or cancellation was requested."""
    category = "handshake_cancelled"


# -------------------------------------------------------------------------
# DATA TYPES
# -------------------------------------------------------------------------
class CandidateEndpoint(NamedTuple):
    api_url: str
    referer: str


class HandshakeResult(NamedTuple):
    token: str
    real_url: str
    payload: Dict[str, Any]


class StreamLink(NamedTuple):
    cmd: str
    resolved_url: str


# -------------------------------------------------------------------------
# ENDPOINT RESOLUTION
# -------------------------------------------------------------------------

def clean_url(url: str) -> str:
    """Collapse runs of slashes that do not follow a scheme separator."""
    return DUPLICATE_SLASHES.sub(r"\1", url)


def _suffix_patterns(base: str, full: bool) -> List[Tuple[str, str]]:
    patterns = [
        (f"{base}/server/load.php", f"{base}/"),
        (f"{base}/c/server/load.php", f"{base}/c/"),
        (f"{base}/portal/server/load.php", f"{base}/portal/"),
        (f"{base}/stalker_portal/server/load.php", f"{base}/stalker_portal/c/"),
    ]
    if full:
        patterns += [
            (f"{base}/stalker_portal/server/load.php", f"{base}/stalker_portal/"),
            (f"{base}/mag/server/load.php", f"{base}/mag/"),
            (f"{base}/ministra/server/load.php", f"{base}/ministra/"),
        ]
    return patterns


def _split_origin(url: str) -> Optional[Tuple[str, List[str]]]:
    """
    Return (scheme://host[:port], path segments) or None when the URL cannot be parsed.
    """
    try:
        parsed = urlparse(url)
        # Accessing .port validates it; a garbage port raises ValueError.
        parsed.port
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return origin, [segment for segment in parsed.path.split("/") if segment]


def has_control_script(url: str) -> bool:
    return any(script in url for script in CONTROL_SCRIPTS)


def generate_candidates(base_url: str) -> Tuple[CandidateEndpoint, ...]:
    """
    Turn a user supplied portal address into the ordered list of control-script
    URLs worth probing, each paired with the Referer the portal expects.

    Order is the probing priority:
      1) an explicit load.php/portal.php given by the user
      2) the standard suffixes under the given path
      3) the same suffixes under every shorter parent path
      4) the suffixes under the bare scheme://host[:port]

    Parameters:
        base_url (str): Portal address as typed by the user.

    Returns:
        Tuple[CandidateEndpoint, ...]: Deduplicated candidates, first-seen order.
    """
    root = base_url.strip()
    if root.endswith("/"):
        root = root[:-1]

    candidates: "OrderedDict[str, CandidateEndpoint]" = OrderedDict()

    def add(api_url: str, referer: str) -> None:
        api_url = clean_url(api_url)
        referer = clean_url(referer)
        key = api_url.rstrip("/")
        if key not in candidates:
            candidates[key] = CandidateEndpoint(api_url, referer)

    if has_control_script(root):
        add(root, root[: root.rfind("/") + 1])
        if SERVER_SCRIPT in root:
            root = root.split(SERVER_SCRIPT)[0]
        else:
            root = root[: root.rfind("/")]

    for api_url, referer in _suffix_patterns(root, full=True):
        add(api_url, referer)

    # Walk up the path: the portal may live above the directory that was typed.
    split = _split_origin(root)
    if split:
        origin, segments = split
        while segments:
            segments.pop()
            current = origin + ("/" + "/".join(segments) if segments else "")
            for api_url, referer in _suffix_patterns(current, full=False):
                add(api_url, referer)

    if not root.startswith("http"):
        root = f"http://{root}"
    split = _split_origin(root)
    if split:
        origin = split[0]
        if origin != root:
            for api_url, referer in _suffix_patterns(origin, full=False):
                add(api_url, referer)
            add(f"{origin}/mag/server/load.php", f"{origin}/mag/")

    result = tuple(candidates.values())
    logger.debug(f"Generated {len(result)} candidates for {base_url}")
    return result


def normalize_api_url(url: str) -> str:
    """Append the standard control script when given a bare portal URL."""
    if has_control_script(url):
        return url
    return clean_url(f"{url.rstrip('/')}{SERVER_SCRIPT}")


def derive_referer(api_url: str) -> str:
    if SERVER_SCRIPT in api_url:
        return api_url.split(SERVER_SCRIPT)[0] + "/"
    return api_url[: api_url.rfind("/") + 1]


# -------------------------------------------------------------------------
# SESSION, HEADERS & COOKIES
# -------------------------------------------------------------------------

def build_cookie_line(mac: str, token: Optional[str] = None, cookies: Iterable[str] = (),
                      timezone: str = DEFAULT_TIMEZONE) -> str:
    parts = [f"mac={quote(mac)}", "stb_lang=en", f"timezone={quote(timezone)}"]
    if token:
        parts.append(f"stoke={token}")
    parts.extend(cookies)
    return "; ".join(parts)


def build_headers(mac: str, token: Optional[str] = None, referer: str = "",
                  cookies: Iterable[str] = (), timezone: str = DEFAULT_TIMEZONE) -> OrderedDict:
    """
    Build the header set a MAG250 sends to its portal.

    Parameters:
        mac (str): Device MAC address.
        token (Optional[str]): Session token; adds the stoke cookie and Bearer auth when set.
        referer (str): Referer matching the control script being called.
        cookies (Iterable[str]): Extra "name=value" cookies harvested while priming.
        timezone (str): Timezone cookie value.

    Returns:
        OrderedDict: Headers for the request.
    """
    headers = OrderedDict()
    headers["User-Agent"] = DEVICE_USER_AGENT
    headers["Referer"] = referer
    headers["Cookie"] = build_cookie_line(mac, token=token, cookies=cookies, timezone=timezone)
    if token:
        headers["Authorization"] = f"Bearer {token}"
    headers["X-User-Agent"] = DEVICE_CAPABILITY
    headers["Content-Type"] = "application/x-www-form-urlencoded"
    headers["JsHttpRequest"] = "1-xml"
    return headers


class PortalSession:
    """
    Identity of one login attempt: MAC, cookies harvested along the way and,
    after a successful handshake, the token.

    A session must not be shared between concurrent handshakes.
    """

    def __init__(self, mac: str, token: Optional[str] = None, timezone: str = DEFAULT_TIMEZONE,
                 cookies: Iterable[str] = ()):
        mac = (mac or "").strip()
        if not mac:
            raise ValueError("MAC address must not be empty.")
        if timezone not in pytz.all_timezones:
            raise ValueError("Invalid timezone provided.")
        self.mac = mac
        self.timezone = timezone
        self.token = token or None
        self._cookies: List[str] = []
        self.add_cookies(cookies)

    @property
    def cookies(self) -> Tuple[str, ...]:
        return tuple(self._cookies)

    def add_cookies(self, cookies: Iterable[str]) -> int:
        """Merge "name=value" cookies, keeping first-seen order. Returns how many were new."""
        added = 0
        for cookie in cookies:
            cookie = cookie.strip()
            if cookie and cookie not in self._cookies:
                self._cookies.append(cookie)
                added += 1
        return added

    def headers(self, referer: str, include_token: bool = True) -> OrderedDict:
        token = self.token if include_token else None
        return build_headers(self.mac, token=token, referer=referer, cookies=self._cookies,
                             timezone=self.timezone)

    def require_token(self) -> str:
        if not self.token:
            raise MissingToken("A session token is required; perform the handshake first.")
        return self.token

    def __repr__(self):
        return f"PortalSession(mac={self.mac!r}, token={'set' if self.token else None}, cookies={len(self._cookies)})"


# -------------------------------------------------------------------------
# RESPONSE INTERPRETATION
# -------------------------------------------------------------------------

def _dig(*path: str) -> Callable[[Any], Any]:
    def accessor(payload: Any) -> Any:
        for key in path:
            if not isinstance(payload, dict):
                return None
            payload = payload.get(key)
        return payload
    return accessor


TOKEN_ACCESSORS = (_dig("js", "token"),)
CMD_ACCESSORS = (_dig("cmd"), _dig("js", "cmd"))
ERROR_ACCESSORS = (lambda payload: payload, _dig("error"), _dig("js", "error"))


def first_value(payload: Any, accessors: Iterable[Callable[[Any], Any]],
                accept: Callable[[Any], bool] = lambda value: isinstance(value, str) and bool(value.strip())) -> Any:
    """Return the first accessor result that passes `accept`, else None."""
    for accessor in accessors:
        value = accessor(payload)
        if accept(value):
            return value
    return None


def is_link_fault(payload: Any) -> bool:
    return first_value(payload, ERROR_ACCESSORS, accept=lambda value: value == LINK_FAULT) is not None


def strip_ffmpeg(cmd: str) -> str:
    return FFMPEG_PREFIX.sub("", cmd.strip()).strip()


def decode_payload(response: requests.Response) -> Any:
    """
    Decode a portal body. JSON is returned as parsed; anything else comes back
    as the stripped text so sentinel strings can still be recognised.
    """
    try:
        return response.json()
    except ValueError:
        return (response.text or "").strip()


def check_response(response: requests.Response, url: str) -> Any:
    """
    Map an HTTP response onto the error taxonomy, returning the decoded payload on 2xx.

    Raises:
        UpstreamBlocked: Provider blocking signature.
        AuthRejected: 403.
        UpstreamError: Any other non-2xx status.
    """
    status = response.status_code
    if 200 <= status < 300:
        return decode_payload(response)
    text = response.text or ""
    if status == BLOCKED_STATUS or BLOCKED_MARKER in text:
        raise UpstreamBlocked(f"Provider blocked the request (status {status}) at {url}", status=status, body=text)
    if status == 403:
        raise AuthRejected(f"403 Forbidden from {url}", status=status, body=text)
    raise UpstreamError(f"HTTP {status} from {url}", status=status, body=text)


def require_dict(payload: Any, url: str, status: Optional[int] = None) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedResponse(f"Response from {url} is not a JSON object.", status=status, body=payload)
    return payload


# -------------------------------------------------------------------------
# HANDSHAKE PROBING
# -------------------------------------------------------------------------
class HandshakeProber:
    """
    Walks candidate endpoints in order until one hands out a token.

    Parameters:
        timeout (float): Timeout for each handshake attempt in seconds.
        prime_timeout (float): Timeout for the landing-page GET used to harvest cookies.
        verify_tls (bool): Verify portal certificates (off by default).
        http (Optional[requests.Session]): Shared HTTP session.
        on_event (Optional[Callable[[Dict], None]]): Receives diagnostic events.
    """

    def __init__(self, timeout: float = 15, prime_timeout: float = 5, verify_tls: bool = False,
                 http: Optional[requests.Session] = None,
                 on_event: Optional[Callable[[Dict[str, Any]], None]] = None):
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("timeout must be a positive number.")
        if not isinstance(prime_timeout, (int, float)) or prime_timeout <= 0:
            raise ValueError("prime_timeout must be a positive number.")
        self.timeout = timeout
        self.prime_timeout = prime_timeout
        self.verify_tls = verify_tls
        self.http = http or requests.Session()
        self.on_event = on_event

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.http.close()

    def _emit(self, event: str, candidate: Optional[CandidateEndpoint] = None, **fields) -> None:
        record = {"event": event}
        if candidate is not None:
            record["api_url"] = candidate.api_url
            record["referer"] = candidate.referer
        record.update(fields)
        logger.debug(f"Probe event: {record}")
        if self.on_event:
            self.on_event(record)

    @staticmethod
    def handshake_params(mac: str) -> Dict[str, str]:
        return {
            "type": "stb",
            "action": "handshake",
            "token": "",
            "mac": mac,
            "deviceId": mac,
            "deviceId2": mac,
            "signature": "",
        }

    def attempt(self, session: PortalSession, candidate: CandidateEndpoint) -> HandshakeResult:
        """
        One handshake request against one candidate.

        Raises:
            NetworkError, UpstreamError (and subclasses): The attempt failed.
        """
        headers = session.headers(candidate.referer, include_token=False)
        logger.debug(f"Handshake - GET {candidate.api_url} (Referer: {candidate.referer})")
        try:
            response = self.http.get(candidate.api_url, params=self.handshake_params(session.mac),
                                     headers=headers, timeout=self.timeout, verify=self.verify_tls)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Handshake request to {candidate.api_url} failed: {e}") from e

        payload = check_response(response, candidate.api_url)
        payload = require_dict(payload, candidate.api_url, status=response.status_code)
        token = first_value(payload, TOKEN_ACCESSORS)
        if not token:
            raise MalformedResponse(f"No token in handshake response from {candidate.api_url}",
                                    status=response.status_code, body=payload)
        return HandshakeResult(token=token, real_url=candidate.api_url, payload=payload)

    def prime(self, session: PortalSession, candidate: CandidateEndpoint) -> int:
        """
        Fetch the portal landing page to collect session cookies.

        Returns:
            int: Number of cookies the landing page offered, already known ones included.
        """
        logger.debug(f"Priming session cookies from {candidate.referer}")
        try:
            response = self.http.get(candidate.referer, headers={"User-Agent": DEVICE_USER_AGENT},
                                     timeout=self.prime_timeout, verify=self.verify_tls)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Session priming at {candidate.referer} failed: {e}") from e
        harvested = [f"{cookie.name}={cookie.value}" for cookie in response.cookies]
        added = session.add_cookies(harvested)
        logger.debug(f"Harvested {len(harvested)} cookies ({added} new) from {candidate.referer}")
        return len(harvested)

    def handshake(self, session: PortalSession, candidates: Iterable[CandidateEndpoint],
                  deadline: Optional[float] = None,
                  cancel_event: Optional[threading.Event] = None) -> HandshakeResult:
        """
        Probe candidates strictly in order; the first token wins.

        Parameters:
            session (PortalSession): Session to authenticate; receives the token and any primed cookies.
            candidates (Iterable[CandidateEndpoint]): Output of generate_candidates().
            deadline (Optional[float]): time.monotonic() value after which no new candidate is tried.
            cancel_event (Optional[threading.Event]): Checked between candidates.

        Returns:
            HandshakeResult: Token and the endpoint that issued it.

        Raises:
            UpstreamBlocked: The provider refused this client outright.
            HandshakeCancelled: Deadline passed or cancellation requested.
            HandshakeExhausted: No candidate succeeded.
        """
        candidates = list(candidates)
        last_error: Optional[Exception] = None
        self._emit("probe_started", total=len(candidates))

        for candidate in candidates:
            if cancel_event is not None and cancel_event.is_set():
                self._emit("probe_cancelled", candidate, outcome="cancelled")
                raise HandshakeCancelled("Handshake cancelled before all candidates were tried.", last_error)
            if deadline is not None and time.monotonic() >= deadline:
                self._emit("probe_cancelled", candidate, outcome="deadline")
                raise HandshakeCancelled("Handshake deadline passed before all candidates were tried.", last_error)

            started = time.monotonic()
            self._emit("candidate_attempt", candidate, attempt="handshake")
            try:
                result = self.attempt(session, candidate)
            except UpstreamBlocked:
                raise
            except AuthRejected as e:
                logger.warning(f"403 at {candidate.api_url}. Attempting to prime session cookies...")
                try:
                    result = self._retry_after_priming(session, candidate, e)
                except UpstreamBlocked:
                    raise
                except StalkerPortalError as retry_error:
                    last_error = retry_error
                    self._emit("candidate_failed", candidate, outcome=retry_error.category,
                               error=str(retry_error), elapsed=time.monotonic() - started)
                    continue
            except StalkerPortalError as e:
                last_error = e
                logger.warning(f"Handshake failed at {candidate.api_url}: {e}")
                self._emit("candidate_failed", candidate, outcome=e.category,
                           error=str(e), elapsed=time.monotonic() - started)
                continue

            session.token = result.token
            self._emit("handshake_succeeded", candidate, outcome="ok", elapsed=time.monotonic() - started)
            logger.info(f"Handshake success at: {candidate.api_url}")
            return result

        self._emit("probe_exhausted", outcome="exhausted", error=str(last_error) if last_error else None)
        raise HandshakeExhausted(
            f"All {len(candidates)} candidate URLs failed" + (f": {last_error}" if last_error else ""),
            last_error,
        )

    def _retry_after_priming(self, session: PortalSession, candidate: CandidateEndpoint,
                             rejection: AuthRejected) -> HandshakeResult:
        """
        Prime cookies and retry the candidate once.

        Raises:
            The error that ended the candidate: the priming failure, the original
            403 when no cookies were offered, or the retry's own failure.
        """
        try:
            harvested = self.prime(session, candidate)
        except NetworkError as e:
            logger.warning(f"Session priming failed: {e}")
            raise
        self._emit("session_primed", candidate, cookies=harvested)
        if not harvested:
            logger.debug(f"No cookies offered by {candidate.referer}")
            raise rejection

        self._emit("candidate_attempt", candidate, attempt="retry")
        try:
            return self.attempt(session, candidate)
        except StalkerPortalError as e:
            logger.warning(f"Retry handshake failed at {candidate.api_url}: {e}")
            raise


# -------------------------------------------------------------------------
# AUTHENTICATED CALLS
# -------------------------------------------------------------------------
class PortalClient:
    """
    Authenticated calls against the endpoint found by the handshake.

    Parameters:
        timeout (float): Timeout for requests in seconds.
        retries (int): Attempts per call on network errors.
        backoff_factor (float): Backoff factor between attempts.
        verify_tls (bool): Verify portal certificates (off by default).
        http (Optional[requests.Session]): Shared HTTP session.
    """

    def __init__(self, timeout: float = 15, retries: int = 1, backoff_factor: float = 1,
                 verify_tls: bool = False, http: Optional[requests.Session] = None):
        if not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("timeout must be a positive number.")
        if not isinstance(retries, int) or retries < 1:
            raise ValueError("retries must be a positive integer.")
        if not isinstance(backoff_factor, (int, float)) or backoff_factor < 0:
            raise ValueError("backoff_factor must be a non-negative number.")
        self.timeout = timeout
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.verify_tls = verify_tls
        self.http = http or requests.Session()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.http.close()
        logger.debug("HTTP session closed.")

    def request(self, session: PortalSession, real_url: str, params: Dict[str, Any]) -> Tuple[Any, int]:
        """
        GET real_url with the session's headers, retrying only on network errors.

        Returns:
            Tuple[Any, int]: Decoded payload and HTTP status.
        """
        session.require_token()
        headers = session.headers(derive_referer(real_url))
        for attempt in range(1, self.retries + 1):
            try:
                logger.debug(f"Attempt {attempt}: GET {real_url} with params={params}")
                response = self.http.get(real_url, params=params, headers=headers,
                                         timeout=self.timeout, verify=self.verify_tls)
                break
            except requests.exceptions.RequestException as e:
                logger.warning(f"Attempt {attempt} failed for URL {real_url}: {e}")
                if attempt >= self.retries:
                    raise NetworkError(f"All {self.retries} attempts failed for {real_url}: {e}") from e
                sleep_time = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(f"Retrying after {sleep_time} seconds...")
                time.sleep(sleep_time)
        return check_response(response, real_url), response.status_code

    def get_profile(self, session: PortalSession, real_url: str) -> Dict[str, Any]:
        """Fetch the device profile (the `js` object when the portal wraps it)."""
        params = {
            "type": "stb",
            "action": "get_profile",
            "hd": 1,
            "ver": FIRMWARE_VERSION,
            "stb_type": STB_TYPE,
            "sn": PLACEHOLDER_SERIAL,
        }
        payload, status = self.request(session, real_url, params)
        payload = require_dict(payload, real_url, status=status)
        profile = payload.get("js", payload)
        if not isinstance(profile, dict):
            raise MalformedResponse(f"Profile from {real_url} is not an object.", status=status, body=payload)
        logger.info("Profile fetched successfully.")
        return profile

    def get_channels(self, session: PortalSession, real_url: str) -> List[Dict[str, Any]]:
        """Fetch the full live channel catalog."""
        params = {"type": "itv", "action": "get_all_channels", "force_ch_link_check": 0}
        payload, status = self.request(session, real_url, params)
        payload = require_dict(payload, real_url, status=status)
        js = payload.get("js")
        # Some portals put the list straight under js instead of js.data.
        channels = js.get("data") if isinstance(js, dict) else js
        if isinstance(channels, dict):
            logger.warning("js.data is a dictionary, converting to single-item list.")
            channels = [channels]
        if not isinstance(channels, list):
            logger.debug("Full JSON: " + json.dumps(payload)[:2000])
            raise MalformedResponse(f"No channel list in response from {real_url}", status=status, body=payload)
        logger.info(f"Fetched {len(channels)} channels.")
        return channels

    def create_link(self, session: PortalSession, real_url: str, cmd: str) -> StreamLink:
        """
        Exchange a channel cmd for a playable URL.

        Raises:
            StreamUnavailable: The portal answered with link_fault.
            LinkResolutionFailed: No usable URL and cmd is not itself a stream URL.
        """
        session.require_token()
        if not cmd:
            raise ValueError("cmd must not be empty.")
        params = {
            "type": "itv",
            "action": "create_link",
            "cmd": cmd,
            "series_number": 0,
            "forced_storage": 0,
            "disable_ad": 0,
            "download": 0,
            "force_ch_link_check": 0,
        }
        payload, status = self.request(session, real_url, params)

        resolved = strip_ffmpeg(first_value(payload, CMD_ACCESSORS) or "")
        if resolved:
            logger.info(f"Successfully created stream link: {resolved}")
            return StreamLink(cmd=cmd, resolved_url=resolved)

        if is_link_fault(payload):
            raise StreamUnavailable("Stream unavailable (link_fault)", status=status, body=payload)

        direct = strip_ffmpeg(cmd)
        if direct.startswith(STREAM_SCHEMES):
            logger.info(f"Falling back to raw cmd URL: {direct}")
            return StreamLink(cmd=cmd, resolved_url=direct)

        logger.error(f"create_link failed. Response: {payload}")
        raise LinkResolutionFailed("Failed to generate link", status=status, body=payload)


def login(portal_url: str, mac: str, prober: Optional[HandshakeProber] = None,
          **kwargs) -> Tuple[PortalSession, HandshakeResult]:
    """
    Resolve candidates for portal_url and handshake with them.

    Extra keyword arguments go to HandshakeProber.handshake (deadline, cancel_event).
    """
    session = PortalSession(mac)
    prober = prober or HandshakeProber()
    candidates = generate_candidates(portal_url)
    logger.info(f"Probing {len(candidates)} candidates for {portal_url}")
    return session, prober.handshake(session, candidates, **kwargs)


# -------------------------------------------------------------------------
# COMMAND LINE WITH LIVE PROGRESS BAR
# -------------------------------------------------------------------------
def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Log in to a Stalker/Ministra portal and list its channels.")
    parser.add_argument("portal_url", help="Portal address, e.g. http://example.com/c/")
    parser.add_argument("mac", help="Device MAC address, e.g. 00:1A:79:00:00:00")
    parser.add_argument("--timeout", type=float, default=15, help="Seconds per request")
    parser.add_argument("--deadline", type=float, default=None, help="Overall seconds allowed for probing")
    parser.add_argument("--link", type=int, default=None, metavar="N", help="Resolve the stream of channel N")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    candidates = generate_candidates(args.portal_url)
    progress_bar = tqdm(total=len(candidates), desc="Probing portal", unit="url", ncols=100)

    def on_event(event):
        if event["event"] == "candidate_failed":
            progress_bar.update(1)
        elif event["event"] == "handshake_succeeded":
            progress_bar.n = progress_bar.total
            progress_bar.refresh()

    deadline = time.monotonic() + args.deadline if args.deadline else None
    session = PortalSession(args.mac)
    try:
        with HandshakeProber(timeout=args.timeout, on_event=on_event) as prober:
            result = prober.handshake(session, candidates, deadline=deadline)
    except StalkerPortalError as e:
        logger.error(f"Login failed: {e}")
        return 1
    finally:
        progress_bar.close()

    logger.info(f"Real URL: {result.real_url}")
    with PortalClient(timeout=args.timeout) as client:
        try:
            profile = client.get_profile(session, result.real_url)
            logger.info(f"Profile: {json.dumps(profile)[:200]}")
            channels = client.get_channels(session, result.real_url)
            for index, channel in enumerate(channels):
                print(f"{index:5d}  {channel.get('name', 'Unnamed')}")
            if args.link is not None:
                link = client.create_link(session, result.real_url, channels[args.link].get("cmd", ""))
                print(link.resolved_url)
        except (StalkerPortalError, IndexError, ValueError) as e:
            logger.error(f"An error occurred: {e}")
            return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
