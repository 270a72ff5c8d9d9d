# pylint: disable=missing-module-docstring,missing-function-docstring

import json

import pytest

from signaling.messages import (
    ClientDisconnected,
    Identify,
    IceCandidate,
    MessageType,
    Offer,
    PartyRole,
    SignalingParseError,
    encode_message,
    parse_message,
    to_wire,
)


def test_identify_accepts_roles_and_legacy_aliases():
    assert parse_message('{"type": "identify", "clientType": "requester"}') == Identify(PartyRole.REQUESTER)
    assert parse_message('{"type": "identify", "clientType": "server"}') == Identify(PartyRole.SERVER)
    assert parse_message('{"type": "identify", "clientType": "website"}') == Identify(PartyRole.REQUESTER)
    assert parse_message('{"type": "identify", "clientType": "electron"}') == Identify(PartyRole.SERVER)


def test_offer_without_session_id_parses_with_none():
    msg = parse_message('{"type": "offer", "sessionId": null, "data": {"sdp": "v=0"}}')

    assert msg == Offer(session_id=None, data={"sdp": "v=0"})
    assert msg.type is MessageType.OFFER


def test_empty_session_id_is_treated_as_absent():
    assert parse_message('{"type": "ice-candidate", "sessionId": ""}') == IceCandidate(session_id=None)


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[]",
        '{"type": "bogus"}',
        '{"sessionId": "s1"}',
        '{"type": "identify"}',
        '{"type": "identify", "clientType": "spectator"}',
        '{"type": "answer", "sessionId": 42}',
    ],
)
def test_invalid_payloads_raise_parse_error(payload: str):
    with pytest.raises(SignalingParseError):
        parse_message(payload)


def test_wire_form_omits_absent_fields():
    assert to_wire(ClientDisconnected(data={"error": "x"})) == {
        "type": "client-disconnected",
        "data": {"error": "x"},
    }
    assert to_wire(Identify(PartyRole.SERVER)) == {"type": "identify", "clientType": "server"}
    assert json.loads(encode_message(Offer(session_id="s1"))) == {"type": "offer", "sessionId": "s1"}
