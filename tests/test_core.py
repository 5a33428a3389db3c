import base64

import pytest

from datatransfer.core import (
    UNDEF_CID,
    ChannelID,
    Cid,
    MessageType,
    Status,
    status_name,
)


def test_status_names_from_source():
    assert status_name(Status.REQUESTED) == "Requested"
    assert status_name(Status.RESPONDER_FINALIZING_TRANSFER_FINISHED) == (
        "ResponderFinalizingTransferFinished"
    )
    assert str(Status.CHANNEL_NOT_FOUND_ERROR) == "ChannelNotFoundError"


def test_status_names_are_unique_for_every_status():
    names = [status_name(s) for s in Status]
    assert all(names)
    assert len(set(names)) == len(list(Status))


def test_unknown_status_has_empty_name():
    assert status_name(len(list(Status)) + 100) == ""


def test_status_values_are_consecutive_from_zero():
    count = len(list(Status))
    assert [Status(i) for i in range(count)] == list(Status)
    assert status_name(Status(0)) == "Requested"
    assert status_name(Status(count - 1)) == "ChannelNotFoundError"


def test_message_types_are_appended_in_order():
    count = len(list(MessageType))
    assert [MessageType(i) for i in range(count)] == list(MessageType)
    assert MessageType(0) is MessageType.NEW
    assert MessageType(7) is MessageType.RESTART_EXISTING_CHANNEL_REQUEST
    with pytest.raises(ValueError):
        MessageType(count)


def test_channel_id_equality_and_hash():
    a = ChannelID(initiator="peer-a", responder="peer-b", id=7)
    b = ChannelID(initiator="peer-a", responder="peer-b", id=7)
    c = ChannelID(initiator="peer-b", responder="peer-a", id=7)
    assert a == b
    assert hash(a) == hash(b)
    assert a != c
    assert {a: 1}[b] == 1


def test_channel_id_str_contains_parts():
    chid = ChannelID(initiator="initiator", responder="responder", id=1)
    text = str(chid)
    assert "initiator" in text and "responder" in text
    assert text.endswith("1")


def test_undefined_cid():
    assert not UNDEF_CID.defined
    assert UNDEF_CID == Cid()
    assert str(UNDEF_CID) == "b"


def test_cid_v1_string_round_trip():
    raw = bytes([0x01, 0x71, 0x12, 0x20]) + bytes(range(32))
    cid = Cid(raw)
    text = str(cid)
    assert cid.defined
    assert text.startswith("b")
    body = text[1:].upper()
    body += "=" * (-len(body) % 8)
    assert base64.b32decode(body) == raw


def test_cid_v0_uses_base58():
    cid = Cid(bytes([0x12, 0x20]) + bytes(range(1, 33)))
    assert cid.is_v0
    assert str(cid).startswith("Qm")


@pytest.mark.parametrize("raw", [b"\x01\x55", bytes([0x01, 0x70, 0x12, 0x20]) + b"\xff" * 32])
def test_cid_equality_follows_bytes(raw):
    assert Cid(raw) == Cid(bytes(raw))
    assert str(Cid(raw)) == str(Cid(bytes(raw)))