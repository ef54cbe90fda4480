import base64
import json
import time

from buyerportal.config import get_settings
from buyerportal.service.tokens import SessionClaims, SessionTokenIssuer


def _issuer() -> SessionTokenIssuer:
    return SessionTokenIssuer(get_settings())


def _claims(**overrides) -> SessionClaims:
    values = {"user_id": "u-1", "email": "buyer@acme.test", "role": "buyer", "company_id": "101"}
    values.update(overrides)
    return SessionClaims(**values)


def _tamper_payload(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    data.update(changes)
    encoded = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{encoded}.{sig}"


def test_access_token_round_trip_preserves_claims():
    issuer = _issuer()
    token = issuer.issue_access(_claims())
    payload = issuer.decode_access(token)
    assert payload is not None
    assert SessionClaims.from_payload(payload) == _claims()
    assert payload["token_type"] == "access"
    assert payload["iss"] == get_settings().jwt_issuer


def test_refresh_token_not_accepted_as_access_token():
    issuer = _issuer()
    pair = issuer.issue_pair(_claims())
    assert issuer.decode_access(pair["refresh_token"]) is None
    assert issuer.decode_refresh(pair["access_token"]) is None
    assert issuer.decode_refresh(pair["refresh_token"]) is not None


def test_expired_token_rejected_beyond_leeway():
    issuer = _issuer()
    issued = time.time() - get_settings().access_token_ttl_minutes * 60 - 600
    token = issuer.issue_access(_claims(), now=issued)
    assert issuer.decode_access(token) is None


def test_token_within_leeway_still_valid():
    issuer = _issuer()
    issued = time.time() - get_settings().access_token_ttl_minutes * 60 - 30
    assert issuer.decode_access(issuer.issue_access(_claims(), now=issued)) is not None


def test_tampered_payload_fails_signature():
    issuer = _issuer()
    token = issuer.issue_access(_claims())
    forged = _tamper_payload(token, role="superadmin")
    assert issuer.decode_access(forged) is None


def test_alg_none_rejected():
    issuer = _issuer()
    token = issuer.issue_access(_claims())
    _, payload, _ = token.split(".")
    header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")
    assert issuer.decode_access(f"{header}.{payload}.") is None


def test_malformed_tokens_rejected():
    issuer = _issuer()
    assert issuer.decode_access("not-a-token") is None
    assert issuer.decode_access("a.b.c") is None


def test_company_id_none_survives_round_trip():
    issuer = _issuer()
    payload = issuer.decode_access(issuer.issue_access(_claims(company_id=None)))
    assert SessionClaims.from_payload(payload).company_id is None


def test_each_token_has_unique_jti():
    issuer = _issuer()
    first = issuer.decode_access(issuer.issue_access(_claims()))
    second = issuer.decode_access(issuer.issue_access(_claims()))
    assert first["jti"] != second["jti"]
