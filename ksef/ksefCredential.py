NIP_PREFIX = 'nip-'


class ksefCredential:
    """
    Long-lived KSeF authorization token.

    The token has the form ``<reference>|nip-<NIP>|<secret>``; the NIP of the
    taxpayer is taken from the second segment.
    """

    def __init__(self, raw_token: str):
        self.raw_token = (raw_token or '').strip()

    @classmethod
    def from_config(cls, config: dict = None):
        """
        Build credential from config dict.

        Returns:
            ksefCredential, or None when token auth is not configured
        """
        if not config:
            return None
        if config.get('auth_method', 'token') != 'token':
            return None
        token = config.get('token')
        if not token:
            return None
        return cls(token)

    def _segments(self) -> list:
        if not self.raw_token:
            return []
        return self.raw_token.split('|')

    @property
    def reference(self) -> str:
        parts = self._segments()
        if len(parts) < 2:
            return None
        return parts[0] or None

    @property
    def tax_id(self) -> str:
        parts = self._segments()
        if len(parts) < 2:
            return None
        nip = parts[1].strip()
        if nip.startswith(NIP_PREFIX):
            nip = nip[len(NIP_PREFIX):]
        return nip or None

    def __bool__(self):
        return bool(self.raw_token)

    def __repr__(self):
        return f"ksefCredential(reference={self.reference!r}, tax_id={self.tax_id!r})"
