"""Web-session pairing from a scanned QR payload."""

import base64
import binascii
import json
import logging
from typing import Any, Dict

from .endpoints import WEB_PAIR
from .errors import (
    AuthAPIError,
    DeviceTrustRejected,
    MalformedPayload,
    PairingRejected,
    RateLimited,
    ServerError,
    Unauthorized,
)
from .models import PairingPayload
from .transport import AuthTransport

logger = logging.getLogger(__name__)

SESSION_ID_FIELDS = ('sid', 'session_id')


def normalize_base64(value: str) -> str:
    """Translate URL-safe base64 to the standard alphabet and restore padding."""
    value = value.strip().replace('-', '+').replace('_', '/')
    return value + '=' * (-len(value) % 4)


def decode_pairing_payload(raw: str) -> PairingPayload:
    """
    Decode a scanned pairing string.

    Args:
        raw: Scanned text, URL-safe base64 of a JSON object, padding optional

    Returns:
        PairingPayload with the session id and the raw string kept verbatim

    Raises:
        MalformedPayload: If the text is not base64 JSON with a session id
    """
    if not raw or not raw.strip():
        raise MalformedPayload('Scanned payload is empty')

    try:
        decoded = base64.b64decode(normalize_base64(raw), validate=True).decode('utf-8')
        data: Dict[str, Any] = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise MalformedPayload(f'Scanned payload could not be decoded: {e}') from e

    if not isinstance(data, dict):
        raise MalformedPayload('Scanned payload is not a JSON object')

    for field_name in SESSION_ID_FIELDS:
        session_id = data.get(field_name)
        if isinstance(session_id, str) and session_id:
            return PairingPayload(session_id=session_id, raw_payload=raw, data=data)

    raise MalformedPayload('Scanned payload does not contain a session id')


class WebPairingHandler:
    """
    Binds a browser session to the authenticated mobile identity.

    Network failures are never retried here; the caller decides whether to
    rescan or cancel.
    """

    def __init__(self, transport: AuthTransport):
        self.transport = transport

    async def pair(self, scanned: str) -> Dict[str, Any]:
        """
        Decode ``scanned`` and ask the backend to pair the web session.

        Returns:
            Response ``data`` payload from the backend

        Raises:
            MalformedPayload: If the scanned text cannot be decoded
            PairingRejected: If the backend declines the session
        """
        payload = decode_pairing_payload(scanned)
        identity = await self.transport.device_identity()

        logger.info(f'Pairing web session {payload.session_id[:8]}... with device {identity.short_id}')
        try:
            envelope = await self.transport.call(
                'POST',
                WEB_PAIR,
                json={
                    'session_id': payload.session_id,
                    'signature': payload.raw_payload,
                    'device_fingerprint': identity.fingerprint,
                    'user_agent': identity.user_agent,
                },
            )
        except (DeviceTrustRejected, RateLimited, ServerError, Unauthorized):
            raise
        except AuthAPIError as e:
            if isinstance(e, PairingRejected) or not 400 <= e.status_code < 500:
                raise
            raise PairingRejected(e.error_code, e.message, e.status_code) from e

        if not envelope.success:
            raise PairingRejected('PAIRING_REJECTED', envelope.message or 'Web session pairing was declined', 200)

        logger.info('Web session paired')
        return envelope.data
