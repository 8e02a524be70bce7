import json
import logging
import datetime
import urllib.parse
import requests

from ksef import ksefError

KSEF_URLS = {
    'test': 'https://api-test.ksef.mf.gov.pl/v2',
    'demo': 'https://api-demo.ksef.mf.gov.pl/v2',
    'prod': 'https://api.ksef.mf.gov.pl/v2',
}

SUBJECT_TYPES = {
    'sent': 'Subject1',
    'received': 'Subject2',
}

class ksefClient:
    def __init__(
        self,
        environment: str = 'prod',
        base_url: str = None,
        timeout: int = 30,
        session: requests.Session = None,
        logger: logging.Logger = None
    ):
        """
        Initialize KSeF API transport.

        Args:
            environment: API environment ('test', 'demo', 'prod')
            base_url: Explicit API URL, overrides environment
            timeout: Request timeout in seconds
            session: requests.Session to use (a new one by default)
        """
        if not base_url and environment not in KSEF_URLS:
            raise ValueError(f"Unknown environment: {environment}. Available: {list(KSEF_URLS.keys())}")

        self.environment = environment
        self.base_url = (base_url or KSEF_URLS[environment]).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

        self.access_token = None

        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: dict, logger: logging.Logger = None):
        return cls(
            environment=config.get('environment') or 'prod',
            base_url=config.get('api_url'),
            timeout=config.get('timeout') or 30,
            logger=logger
        )

    def _get_headers(self, bearer: str = None, content_type: str = 'application/json') -> dict:
        headers = {
            'Content-Type': content_type,
            'Accept': 'application/json',
        }
        token = bearer or self.access_token
        if token:
            headers['Authorization'] = f'Bearer {token}'
        return headers

    def _raise_for_status(self, response: requests.Response):
        if response.status_code < 400:
            return

        content_type = response.headers.get('Content-Type', '')
        error_msg = f"KSeF API Error: HTTP {response.status_code}"
        error_data = {}
        try:
            if 'application/json' in content_type:
                error_data = response.json()
                if isinstance(error_data, dict) and 'exception' in error_data:
                    exc = error_data['exception']
                    detail_list = exc.get('exceptionDetailList', [])
                    if detail_list:
                        error_msg = detail_list[0].get('exceptionDescription', error_msg)
                elif isinstance(error_data, dict) and 'message' in error_data:
                    error_msg = error_data['message']
            else:
                error_data = {'raw': response.text[:500], 'content_type': content_type}
        except ValueError:
            error_data = {'raw': response.text[:500], 'content_type': content_type}

        error_class = ksefError.Unauthorized if response.status_code == 401 else ksefError.ksefError
        raise error_class(
            message=error_msg,
            status_code=response.status_code,
            response_data=error_data
        )

    def _send(self, method: str, endpoint: str, data: dict = None, bearer: str = None,
              accept: str = 'application/json', params: dict = None) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        headers = self._get_headers(bearer)
        headers['Accept'] = accept

        self.logger.info(f"KSeF Request: {method} {url}")
        if data:
            self.logger.debug(f"KSeF Request data: {json.dumps(data, indent=2)}")

        try:
            response = self.session.request(
                method.upper(), url, headers=headers, json=data, params=params, timeout=self.timeout
            )
        except requests.RequestException as e:
            self.logger.error(f"KSeF Request Error: {e}")
            raise ksefError.RemoteUnavailable(message=f"Connection error with KSeF: {str(e)}")

        self.logger.info(f"KSeF Response: {response.status_code}")
        self._raise_for_status(response)
        return response

    def _make_request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        bearer: str = None,
        params: dict = None
    ):
        """
        Make JSON request to KSeF API.

        Args:
            method: HTTP method (GET, POST, DELETE)
            endpoint: API endpoint (without base_url)
            data: JSON data to send
            bearer: Token for the Authorization header, defaults to access_token
            params: Query string parameters

        Returns:
            Decoded JSON (dict or list), {'raw_content': text} for non-JSON bodies

        Raises:
            Unauthorized: on HTTP 401
            RemoteUnavailable: on connection errors
            ksefError: on other API errors
        """
        response = self._send(method, endpoint, data=data, bearer=bearer, params=params)
        self.logger.debug(f"KSeF Response body: {response.text[:2000] if response.text else 'EMPTY'}")

        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError:
            return {'raw_content': response.text}

    def get_public_key_certificates(self):
        return self._make_request('GET', '/security/public-key-certificates')

    def get_challenge(self) -> dict:
        return self._make_request('POST', '/auth/challenge', data={})

    def submit_ksef_token(self, challenge: str, nip: str, encrypted_token: str) -> dict:
        data = {
            "challenge": challenge,
            "contextIdentifier": {
                "type": "Nip",
                "value": nip
            },
            "encryptedToken": encrypted_token
        }
        return self._make_request('POST', '/auth/ksef-token', data=data)

    def get_auth_status(self, reference_number: str, authentication_token: str) -> dict:
        return self._make_request(
            'GET',
            f'/auth/{urllib.parse.quote(reference_number, safe="")}',
            bearer=authentication_token
        )

    def redeem_token(self, authentication_token: str) -> dict:
        return self._make_request('POST', '/auth/token/redeem', data={}, bearer=authentication_token)

    def terminate_session(self) -> dict:
        return self._make_request('DELETE', '/auth/sessions/current')

    def query_metadata(
        self,
        subject_type: str,
        date_from: datetime.datetime,
        date_to: datetime.datetime,
        page_size: int = 100,
        page_offset: int = 0,
        date_type: str = 'PermanentStorage'
    ) -> dict:
        """
        Search invoice metadata in KSeF.

        Args:
            subject_type: 'Subject1' (issued/sales) or 'Subject2' (received/purchases)
            date_from: Start of the range
            date_to: End of the range
            page_size: Results per page
            page_offset: Page offset
            date_type: Date the range applies to

        Returns:
            dict with 'invoices' list
        """
        data = {
            "subjectType": subject_type,
            "dateRange": {
                "dateType": date_type,
                "from": date_from.isoformat(),
                "to": date_to.isoformat()
            }
        }
        params = {
            'pageSize': page_size,
            'pageOffset': page_offset,
            'sortOrder': 'Asc',
        }
        return self._make_request('POST', '/invoices/query/metadata', data=data, params=params)

    def get_invoice(self, ksef_number: str):
        """
        Download invoice resource.

        Returns:
            (body bytes, Content-Type header)
        """
        response = self._send(
            'GET',
            f'/invoices/ksef/{urllib.parse.quote(ksef_number, safe="")}',
            accept='application/octet-stream, application/xml, application/json'
        )
        return response.content, response.headers.get('Content-Type', '')
