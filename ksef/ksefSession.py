import re
import enum
import time
import logging
import datetime
import threading
from concurrent.futures import Future, wait

from ksef import ksefCrypto
from ksef import ksefError

STATUS_IN_PROGRESS = 100
STATUS_READY = 200

TOKEN_POLL_INTERVAL = 0.5
TOKEN_POLL_TIMEOUT = 5.0

REFRESH_INTERVAL = 60
REFRESH_MARGIN = datetime.timedelta(minutes=5)

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
_FRACTION_RE = re.compile(r'\.(\d+)')


class AuthState(enum.Enum):
    UNAUTHENTICATED = 'unauthenticated'
    CERTIFICATE_LOADING = 'certificate_loading'
    CHALLENGE_REQUESTED = 'challenge_requested'
    TOKEN_ENCRYPTED = 'token_encrypted'
    AUTH_SUBMITTED = 'auth_submitted'
    STATUS_POLLING = 'status_polling'
    REDEEMING = 'redeeming'
    AUTHENTICATED = 'authenticated'
    FAILED = 'failed'


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def parse_timestamp(value: str) -> datetime.datetime:
    """
    Parse ISO-8601 timestamp as returned by KSeF (7 fractional digits, 'Z' or offset).

    Naive values are taken as UTC. The fraction is cut or zero padded to 6 digits,
    fromisoformat() before 3.11 accepts only 3 or 6.
    """
    value = _FRACTION_RE.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), value.strip())
    value = value.replace('Z', '+00:00')
    parsed = datetime.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def challenge_timestamp_ms(challenge_response: dict) -> int:
    timestamp_ms = challenge_response.get('timestampMs')
    if timestamp_ms is not None:
        return int(timestamp_ms)
    timestamp = challenge_response.get('timestamp')
    if timestamp:
        return (parse_timestamp(timestamp) - EPOCH) // datetime.timedelta(milliseconds=1)
    return None


class ksefSession:
    """
    Authenticated KSeF session obtained with a KSeF token.

    Runs the challenge / RSA-OAEP / submit / status / redeem sequence, holds the
    resulting access token with its expiry and can keep it fresh from a
    background thread. Concurrent authenticate() calls share one attempt.
    """

    def __init__(
        self,
        client,
        credential=None,
        credential_loader=None,
        poll_interval: float = TOKEN_POLL_INTERVAL,
        poll_timeout: float = TOKEN_POLL_TIMEOUT,
        strict_status_poll: bool = False,
        logger: logging.Logger = None
    ):
        """
        Args:
            client: ksefClient used for the remote calls
            credential: ksefCredential used by authenticate() and the refresh loop
            credential_loader: Callable returning a ksefCredential, used when no
                credential is set (e.g. re-reading the config)
            poll_interval: Seconds between authentication status checks
            poll_timeout: Total seconds to wait for status 200
            strict_status_poll: Raise AuthStatusTimeout instead of redeeming
                after the poll timeout
        """
        self.client = client
        self.credential = credential
        self.credential_loader = credential_loader
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.strict_status_poll = strict_status_poll

        self.access_token = None
        self.expires_at = None
        self.refresh_token = None
        self.reference_number = None

        self.state = AuthState.UNAUTHENTICATED
        self.last_error = None

        self._flight_lock = threading.Lock()
        self._in_flight = None
        self._in_flight_token = None

        self._refresh_thread = None
        self._refresh_stop = None

        self.logger = logger or logging.getLogger(__name__)

    def is_valid(self) -> bool:
        if not self.access_token:
            return False
        return self.expires_at is None or self.expires_at > utcnow()

    def invalidate(self):
        self.logger.warning("KSeF session invalidated - next call will re-authenticate")
        self.access_token = None
        self.client.access_token = None
        self.state = AuthState.UNAUTHENTICATED

    def _set_state(self, state: AuthState):
        self.logger.debug(f"Auth state: {self.state.value} -> {state.value}")
        self.state = state

    def _resolve_credential(self, credential=None):
        if credential is not None:
            self.credential = credential
        elif self.credential is None and self.credential_loader is not None:
            self.credential = self.credential_loader()
        return self.credential

    def authenticate(self, credential=None):
        """
        Authenticate with KSeF token.

        Flow:
        1. Get public key certificate
        2. Get challenge from /auth/challenge
        3. Encrypt token|timestampMs with public key (RSA-OAEP)
        4. Send to /auth/ksef-token
        5. Poll authorization status
        6. Exchange authenticationToken for accessToken

        Only one attempt runs at a time. Callers arriving while an attempt is
        in flight get its result when they pass no credential or the same
        token; a different credential waits for that attempt to finish and
        then runs its own.

        Args:
            credential: ksefCredential, defaults to the stored one

        Returns:
            self

        Raises:
            ksefError: step specific subclass on failure
        """
        token = credential.raw_token if credential is not None else None
        while True:
            with self._flight_lock:
                future = self._in_flight
                if future is None:
                    future = self._in_flight = Future()
                    effective = credential if credential is not None else self.credential
                    self._in_flight_token = effective.raw_token if effective is not None else None
                    break
                joinable = token is None or token == self._in_flight_token

            if joinable:
                self.logger.info("Authentication already in progress, waiting for it...")
                return future.result()
            self.logger.info("Authentication with another token in progress, waiting to start...")
            wait([future])

        try:
            result = self._authenticate(credential)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._flight_lock:
                self._in_flight = None
                self._in_flight_token = None

    def _authenticate(self, credential=None):
        self.logger.info("Starting KSeF authentication flow...")
        try:
            credential = self._resolve_credential(credential)

            self._set_state(AuthState.CERTIFICATE_LOADING)
            certificate = self._load_certificate()

            self._set_state(AuthState.CHALLENGE_REQUESTED)
            challenge, timestamp_ms = self._get_challenge()

            self.logger.info("Encrypting token with KSeF public key...")
            encrypted_token = ksefCrypto.encrypt_token(
                credential.raw_token if credential else None, timestamp_ms, certificate
            )
            self._set_state(AuthState.TOKEN_ENCRYPTED)

            reference_number, authentication_token = self._submit(credential, challenge, encrypted_token)
            self._set_state(AuthState.AUTH_SUBMITTED)

            self._set_state(AuthState.STATUS_POLLING)
            self._wait_for_status(reference_number, authentication_token)

            self._set_state(AuthState.REDEEMING)
            access_token, expires_at, refresh_token = self._redeem(authentication_token)
        except ksefError.ksefError as e:
            self.last_error = e
            self._set_state(AuthState.FAILED)
            self.logger.error(f"KSeF authentication failed: {e.message}")
            self.state = AuthState.AUTHENTICATED if self.is_valid() else AuthState.UNAUTHENTICATED
            raise

        self.access_token = access_token
        self.expires_at = expires_at
        self.refresh_token = refresh_token
        self.reference_number = reference_number
        self.client.access_token = access_token
        self.last_error = None
        self._set_state(AuthState.AUTHENTICATED)

        self.logger.info("Successfully authenticated with KSeF")
        if expires_at:
            self.logger.info(f"Token valid until: {expires_at.isoformat()}")
        return self

    def _load_certificate(self) -> str:
        self.logger.info("Loading public key certificate from KSeF...")
        try:
            certificates = self.client.get_public_key_certificates()
        except ksefError.ksefError as e:
            raise ksefError.CertificateUnavailable(
                f"Error loading public key certificate: {e.message}",
                status_code=e.status_code, response_data=e.response_data
            )
        return ksefCrypto.select_certificate(certificates)

    def _get_challenge(self):
        self.logger.info("Requesting challenge from KSeF...")
        try:
            challenge_response = self.client.get_challenge()
        except ksefError.ksefError as e:
            raise ksefError.ChallengeUnavailable(
                f"Error getting challenge: {e.message}",
                status_code=e.status_code, response_data=e.response_data
            )

        challenge = challenge_response.get('challenge') if isinstance(challenge_response, dict) else None
        timestamp_ms = None
        if challenge:
            try:
                timestamp_ms = challenge_timestamp_ms(challenge_response)
            except (TypeError, ValueError) as e:
                self.logger.error(f"Invalid challenge timestamp: {e}")

        if not challenge or timestamp_ms is None:
            raise ksefError.ChallengeUnavailable(
                message="No challenge or timestamp received from KSeF",
                response_data=challenge_response
            )

        self.logger.info(f"Received challenge: {challenge[:20]}..., timestamp: {timestamp_ms}")
        return challenge, timestamp_ms

    def _submit(self, credential, challenge: str, encrypted_token: str):
        nip = credential.tax_id if credential else None
        if not nip:
            raise ksefError.AuthSubmitRejected("NIP not available - KSeF token has unexpected format")

        self.logger.info("Sending encrypted token to /auth/ksef-token...")
        try:
            response = self.client.submit_ksef_token(challenge, nip, encrypted_token)
        except ksefError.ksefError as e:
            raise ksefError.AuthSubmitRejected(
                f"Authentication request rejected: {e.message}",
                status_code=e.status_code, response_data=e.response_data
            )

        reference_number = response.get('referenceNumber')
        auth_token_data = response.get('authenticationToken')
        if isinstance(auth_token_data, dict):
            authentication_token = auth_token_data.get('token')
        else:
            authentication_token = auth_token_data

        if not reference_number or not authentication_token:
            raise ksefError.AuthSubmitRejected(
                message="No referenceNumber or authenticationToken in response",
                response_data=response
            )

        self.logger.info(f"Temporary auth token received, reference: {reference_number}")
        return reference_number, authentication_token

    def _wait_for_status(self, reference_number: str, authentication_token: str) -> bool:
        """
        Poll authorization status until code 200.

        404 and transport errors mean the status is not available yet. On
        timeout the token flow goes on to redemption, which fails on its own
        if the server is not ready.
        """
        deadline = time.monotonic() + self.poll_timeout
        attempt = 0

        while True:
            attempt += 1
            try:
                status_response = self.client.get_auth_status(reference_number, authentication_token)
            except ksefError.ksefError as e:
                if e.status_code == 404:
                    self.logger.info("Status not yet available (404), retrying...")
                else:
                    self.logger.warning(f"Poll error (attempt {attempt}): {e.message}")
                status_response = None

            status = status_response.get('status') if isinstance(status_response, dict) else None
            if isinstance(status, dict):
                code = status.get('code')
                description = status.get('description', '')
                self.logger.info(f"Auth status: {code} - {description}")
                if code == STATUS_READY:
                    self.logger.info("Authentication status ready for redemption")
                    return True
                if code != STATUS_IN_PROGRESS:
                    raise ksefError.AuthStatusFailed(
                        message=f"Authorization error: code {code} - {description}",
                        response_data=status_response
                    )
                self.logger.info(f"Authorization in progress (attempt {attempt})...")

            if time.monotonic() + self.poll_interval > deadline:
                break
            time.sleep(self.poll_interval)

        if self.strict_status_poll:
            raise ksefError.AuthStatusTimeout(message="Authorization timeout")

        # TODO: switch the token flow to strict_status_poll once redeem failures after a timeout are ruled out
        self.logger.warning("Timeout waiting for status, proceeding to redemption anyway")
        return False

    def _redeem(self, authentication_token: str):
        self.logger.info("Exchanging authenticationToken for accessToken...")
        try:
            response = self.client.redeem_token(authentication_token)
        except ksefError.ksefError as e:
            raise ksefError.RedemptionFailed(
                f"Error redeeming access token: {e.message}",
                status_code=e.status_code, response_data=e.response_data
            )

        access_token_data = response.get('accessToken') if isinstance(response, dict) else None
        if not isinstance(access_token_data, dict) or not access_token_data.get('token'):
            raise ksefError.RedemptionFailed(
                message="No access token in redeem response",
                response_data=response
            )

        expires_at = None
        valid_until = access_token_data.get('validUntil')
        if valid_until:
            try:
                expires_at = parse_timestamp(valid_until)
            except ValueError as e:
                raise ksefError.RedemptionFailed(
                    message=f"Invalid validUntil in redeem response: {e}",
                    response_data=response
                )

        refresh_token_data = response.get('refreshToken')
        if isinstance(refresh_token_data, dict):
            refresh_token = refresh_token_data.get('token')
        else:
            refresh_token = refresh_token_data

        return access_token_data['token'], expires_at, refresh_token

    def terminate(self):
        """Close the session on the KSeF side and forget the access token."""
        if not self.access_token:
            return
        try:
            self.client.terminate_session()
        except ksefError.ksefError as e:
            self.logger.warning(f"Could not terminate KSeF session: {e.message}")
        self.access_token = None
        self.expires_at = None
        self.refresh_token = None
        self.reference_number = None
        self.client.access_token = None
        self.state = AuthState.UNAUTHENTICATED

    def refresh_if_needed(self) -> bool:
        """
        Re-authenticate when the access token expires within 5 minutes.

        Returns:
            True when a refresh was performed successfully
        """
        if not self.access_token or not self.expires_at:
            return False

        if self.expires_at - utcnow() >= REFRESH_MARGIN:
            return False

        self.logger.info("Token expiring soon, refreshing...")
        try:
            self.authenticate()
        except ksefError.ksefError as e:
            self.logger.warning(f"Token refresh failed - will re-authenticate on next request: {e.message}")
            return False

        self.logger.info("Token refreshed successfully")
        return True

    def _refresh_loop(self, stop: threading.Event, interval: float):
        while not stop.wait(interval):
            try:
                self.refresh_if_needed()
            except Exception as e:
                self.logger.warning(f"Error in token refresh loop: {e}")

    def start_refresh_loop(self, interval: float = REFRESH_INTERVAL):
        self.stop_refresh_loop()
        stop = threading.Event()
        thread = threading.Thread(
            target=self._refresh_loop, args=(stop, interval), name='ksef-token-refresh', daemon=True
        )
        self._refresh_stop = stop
        self._refresh_thread = thread
        thread.start()
        self.logger.debug(f"Token refresh loop started (every {interval}s)")

    def stop_refresh_loop(self):
        stop, thread = self._refresh_stop, self._refresh_thread
        self._refresh_stop = None
        self._refresh_thread = None
        if stop is None:
            return
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self.logger.debug("Token refresh loop stopped")
