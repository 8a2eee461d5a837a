"""Unit tests for scanned pairing payload decoding."""

import base64
import json

import pytest

from prayantra_auth.errors import MalformedPayload
from prayantra_auth.pairing import decode_pairing_payload, normalize_base64


def _encode(payload, strip_padding=True):
    text = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
    return text.rstrip('=') if strip_padding else text


@pytest.mark.unit
class TestNormalizeBase64:
    def test_translates_url_safe_alphabet(self):
        assert normalize_base64('ab-_') == 'ab+/'

    @pytest.mark.parametrize('value,expected', [('abcd', 'abcd'), ('abc', 'abc='), ('ab', 'ab=='), ('abcde', 'abcde===')])
    def test_pads_to_multiple_of_four(self, value, expected):
        assert normalize_base64(value) == expected


@pytest.mark.unit
class TestDecodePairingPayload:
    def test_unpadded_payload(self):
        raw = _encode({'sid': 'web-session-1', 'ts': 1700000000})

        payload = decode_pairing_payload(raw)

        assert payload.session_id == 'web-session-1'
        assert payload.raw_payload == raw
        assert payload.data['ts'] == 1700000000

    def test_padded_payload_with_session_id_field(self):
        payload = decode_pairing_payload(_encode({'session_id': 'abc?>>'}, strip_padding=False))

        assert payload.session_id == 'abc?>>'

    def test_url_safe_characters_are_decoded(self):
        # runs of '?' and '>' encode to '/' and '+', which become '_' and '-'
        raw = _encode({'sid': 's', 'nonce': '???>>>'})
        assert '-' in raw or '_' in raw

        assert decode_pairing_payload(raw).session_id == 's'

    @pytest.mark.parametrize('raw', ['', '   ', '!!!not base64!!!', _encode(['sid']), _encode({'other': 1}), _encode({'sid': ''})])
    def test_malformed_payloads(self, raw):
        with pytest.raises(MalformedPayload):
            decode_pairing_payload(raw)

    def test_non_json_text(self):
        raw = base64.urlsafe_b64encode(b'plain text').decode()

        with pytest.raises(MalformedPayload):
            decode_pairing_payload(raw)
