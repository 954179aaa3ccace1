"""
Payment gateway client (Pesapal v3 REST API).

Encapsulates the gateway's protocol: bearer-token auth, IPN registration,
charge submission, and status queries. Each call uses bounded timeouts.

RETRY POLICY:
- Access token: cached until shortly before expiry; a failed fetch is
  retried with exponential backoff, then surfaces as GatewayAuthFailed.
- Status query and IPN registration: idempotent, retried on transport
  errors and 5xx responses.
- Charge submission: retried ONLY when the request provably never reached
  the gateway (connect failure). A read timeout or 5xx after sending means
  a charge may exist, so it surfaces as ChargeSubmissionUncertain for
  manual reconciliation instead of risking a double charge. A request
  that could not even be built (bad base URL or scheme) is a definite
  GatewayError.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from ..validation import ExternalServiceError, NotFoundError

log = logging.getLogger(__name__)

TOKEN_PATH = "/api/Auth/RequestToken"
REGISTER_IPN_PATH = "/api/URLSetup/RegisterIPN"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}

# Errors where the request never left this process
UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)

# Errors raised while building the request; nothing was sent and a retry
# cannot help
UNBUILT_ERRORS = (httpx.InvalidURL, httpx.UnsupportedProtocol)


class GatewayError(ExternalServiceError):
    """The gateway answered, but not with something usable."""
    code = "GATEWAY_ERROR"


class GatewayAuthFailed(GatewayError):
    code = "GATEWAY_AUTH_FAILED"


class GatewayUnavailable(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


class ChargeSubmissionUncertain(GatewayError):
    """A charge request was sent but its outcome is unknown."""
    code = "CHARGE_SUBMISSION_UNCERTAIN"


class UnknownTracking(NotFoundError):
    """The gateway has no record of the tracking id."""
    code = "UNKNOWN_TRACKING"


@dataclass(frozen=True)
class ChargeSession:
    tracking_id: str
    merchant_reference: str
    redirect_url: str


@dataclass(frozen=True)
class GatewayStatus:
    tracking_id: str
    status_description: str
    payment_method: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = None
    confirmation_code: Optional[str] = None
    merchant_reference: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


def _json(response: httpx.Response) -> dict:
    data = response.json()
    return data if isinstance(data, dict) else {}


def _error_text(data: dict, response: httpx.Response) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or error.get("error_type") or str(error)
    return error or data.get("message") or f"HTTP {response.status_code}"


class PesapalClient:
    """
    Client for the payment gateway.

    Registered as a Flask extension (init_app) so services fetch it through
    extensions.get_gateway(); it also works standalone for scripts and tests.
    The cached access token is the only process-global state: it is
    non-authoritative and safe to lose.
    """

    def __init__(
        self,
        base_url: str | None = None,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        *,
        timeout: float = 5.0,
        read_timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        token_ttl: int = 240,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.timeout = timeout
        self.read_timeout = read_timeout
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.token_ttl = token_ttl
        self._transport = transport
        self._clock = clock
        self._sleep = sleep

        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def init_app(self, app) -> None:
        cfg = app.config
        self.base_url = cfg["PESAPAL_BASE_URL"]
        self.consumer_key = cfg["PESAPAL_CONSUMER_KEY"]
        self.consumer_secret = cfg["PESAPAL_CONSUMER_SECRET"]
        self.timeout = cfg["PESAPAL_TIMEOUT_SECONDS"]
        self.read_timeout = cfg["PESAPAL_READ_TIMEOUT_SECONDS"]
        self.max_retries = max(1, cfg["PESAPAL_MAX_RETRIES"])
        self.backoff_base = cfg["PESAPAL_BACKOFF_SECONDS"]
        self.token_ttl = cfg["PESAPAL_TOKEN_TTL_SECONDS"]
        self.close()
        app.extensions["payment_gateway"] = self

    def _http(self) -> httpx.Client:
        client = self._client
        if client is not None:
            return client
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.base_url or "",
                    timeout=httpx.Timeout(self.timeout, read=self.read_timeout),
                    transport=self._transport,
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries - 1:
            self._sleep(self.backoff_base * (2 ** attempt))

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    def get_access_token(self) -> str:
        """Return a valid bearer token, fetching a new one when expired."""
        with self._token_lock:
            if self._token and self._clock() < self._token_expires_at:
                return self._token

            last_error = None
            for attempt in range(self.max_retries):
                try:
                    response = self._http().post(
                        TOKEN_PATH,
                        json={
                            "consumer_key": self.consumer_key,
                            "consumer_secret": self.consumer_secret,
                        },
                        headers=JSON_HEADERS,
                    )
                    data = _json(response)
                    token = data.get("token")
                    if response.is_success and token:
                        self._token = token
                        self._token_expires_at = self._clock() + self.token_ttl
                        return token
                    last_error = _error_text(data, response)
                except (httpx.TransportError, httpx.InvalidURL, ValueError) as exc:
                    last_error = str(exc) or exc.__class__.__name__

                log.warning(
                    "Gateway token request failed (attempt %s/%s): %s",
                    attempt + 1, self.max_retries, last_error,
                )
                self._backoff(attempt)

            raise GatewayAuthFailed(
                "Payment system authentication failed",
                details={"reason": last_error},
            )

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0

    def _authorized(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send an authenticated request. A 401 invalidates the cached token
        and the request is re-sent once with a fresh one.
        """
        for _ in range(2):
            headers = dict(JSON_HEADERS)
            headers["Authorization"] = f"Bearer {self.get_access_token()}"
            response = self._http().request(method, path, headers=headers, **kwargs)
            if response.status_code != 401:
                return response
            self.invalidate_token()
        raise GatewayAuthFailed("Payment gateway rejected the access token")

    # -------------------------------------------------------------------------
    # IPN registration
    # -------------------------------------------------------------------------

    def register_ipn(self, url: str, notification_type: str = "GET") -> str:
        """Register the IPN endpoint and return the gateway's ipn_id."""
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self._authorized(
                    "POST",
                    REGISTER_IPN_PATH,
                    json={"url": url, "ipn_notification_type": notification_type},
                )
                if response.status_code < 500:
                    data = _json(response)
                    ipn_id = data.get("ipn_id")
                    if response.is_success and ipn_id:
                        log.info("Registered IPN url=%s ipn_id=%s", url, ipn_id)
                        return ipn_id
                    raise GatewayError(
                        "Payment notification setup failed",
                        details={"reason": _error_text(data, response), "url": url},
                    )
                last_error = f"HTTP {response.status_code}"
            except (httpx.TransportError, ValueError) as exc:
                last_error = str(exc) or exc.__class__.__name__

            log.warning("IPN registration failed (attempt %s/%s): %s", attempt + 1, self.max_retries, last_error)
            self._backoff(attempt)

        raise GatewayUnavailable(
            "Payment notification setup failed",
            details={"reason": last_error, "url": url},
        )

    # -------------------------------------------------------------------------
    # Charge submission
    # -------------------------------------------------------------------------

    def submit_order(self, payload: dict) -> ChargeSession:
        """
        Submit a charge request.

        payload follows the gateway's SubmitOrderRequest body; payload["id"]
        is the merchant reference (our order id).
        """
        reference = str(payload.get("id"))
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self._authorized("POST", SUBMIT_ORDER_PATH, json=payload)
            except UNSENT_ERRORS as exc:
                last_error = str(exc) or exc.__class__.__name__
                log.warning(
                    "[Order: %s] Charge submission could not connect (attempt %s/%s): %s",
                    reference, attempt + 1, self.max_retries, last_error,
                )
                self._backoff(attempt)
                continue
            except UNBUILT_ERRORS as exc:
                log.error("[Order: %s] Charge request could not be built: %s", reference, exc)
                raise GatewayError(
                    "Payment gateway is misconfigured",
                    details={"order_id": reference, "reason": str(exc) or exc.__class__.__name__},
                )
            except httpx.TransportError as exc:
                log.error("[Order: %s] Charge submission outcome unknown: %s", reference, exc)
                raise ChargeSubmissionUncertain(
                    "Payment submission outcome unknown; manual reconciliation required",
                    details={"order_id": reference, "reason": str(exc) or exc.__class__.__name__},
                )

            if response.status_code >= 500:
                log.error("[Order: %s] Charge submission got HTTP %s", reference, response.status_code)
                raise ChargeSubmissionUncertain(
                    "Payment submission outcome unknown; manual reconciliation required",
                    details={"order_id": reference, "reason": f"HTTP {response.status_code}"},
                )

            try:
                data = _json(response)
            except ValueError:
                raise ChargeSubmissionUncertain(
                    "Payment submission returned an unreadable response",
                    details={"order_id": reference},
                )

            tracking_id = data.get("order_tracking_id")
            redirect_url = data.get("redirect_url")
            if not response.is_success or data.get("error") or not tracking_id or not redirect_url:
                raise GatewayError(
                    "Payment initiation failed",
                    details={"order_id": reference, "reason": _error_text(data, response)},
                )

            return ChargeSession(
                tracking_id=tracking_id,
                merchant_reference=data.get("merchant_reference") or reference,
                redirect_url=redirect_url,
            )

        raise GatewayUnavailable(
            "Payment gateway unreachable",
            details={"order_id": reference, "reason": last_error},
        )

    # -------------------------------------------------------------------------
    # Status query
    # -------------------------------------------------------------------------

    def get_transaction_status(self, tracking_id: str) -> GatewayStatus:
        """
        Authoritative payment status for a tracking id.

        Raises:
            UnknownTracking: the gateway has no record of tracking_id
            GatewayUnavailable: retries exhausted
        """
        last_error = None
        for attempt in range(self.max_retries):
            try:
                response = self._authorized(
                    "GET", TRANSACTION_STATUS_PATH, params={"orderTrackingId": tracking_id}
                )
                if response.status_code == 404:
                    raise UnknownTracking(
                        f"Gateway has no record of tracking id {tracking_id}",
                        details={"tracking_id": tracking_id},
                    )
                if response.status_code < 500:
                    data = _json(response)
                    description = (data.get("payment_status_description") or "").strip()
                    if not description:
                        raise UnknownTracking(
                            f"Gateway has no record of tracking id {tracking_id}",
                            details={"tracking_id": tracking_id, "reason": _error_text(data, response)},
                        )
                    return GatewayStatus(
                        tracking_id=tracking_id,
                        status_description=description,
                        payment_method=data.get("payment_method"),
                        amount=data.get("amount"),
                        currency=data.get("currency"),
                        confirmation_code=data.get("confirmation_code"),
                        merchant_reference=data.get("merchant_reference"),
                        raw=data,
                    )
                last_error = f"HTTP {response.status_code}"
            except (httpx.TransportError, ValueError) as exc:
                last_error = str(exc) or exc.__class__.__name__

            log.warning(
                "[Tracking: %s] Status query failed (attempt %s/%s): %s",
                tracking_id, attempt + 1, self.max_retries, last_error,
            )
            self._backoff(attempt)

        raise GatewayUnavailable(
            "Payment verification failed",
            details={"tracking_id": tracking_id, "reason": last_error},
        )
