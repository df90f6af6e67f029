from io import BytesIO

import pytest

from pglink import messages
from pglink.exceptions import InterfaceError, ProtocolError
from pglink.messages import (
    PASSWORD,
    AuthenticationCleartextPassword,
    AuthenticationMD5Password,
    AuthenticationOk,
    BackendKeyData,
    CommandComplete,
    DataRow,
    ErrorResponse,
    MessageBuilder,
    NoData,
    NoticeResponse,
    ParameterDescription,
    ParameterStatus,
    ReadyForQuery,
    RowDescription,
    RowField,
    UnknownMessage,
    _create_message,
    parse_message,
    read_message,
)


def test_create_message():
    msg = _create_message(PASSWORD, "barbour".encode("utf8") + b"\x00")
    assert msg == b"p\x00\x00\x00\x0cbarbour\x00"


def test_builder_password():
    msg = MessageBuilder(PASSWORD)
    msg.add_string("barbour")
    assert msg.serialize() == b"p\x00\x00\x00\x0cbarbour\x00"


def test_builder_startup_has_no_code():
    msg = MessageBuilder()
    msg.add_int32(196608)
    msg.add_string("user")
    msg.add_string("alice")
    msg.add_byte(0)
    assert msg.serialize() == (
        b"\x00\x00\x00\x14\x00\x03\x00\x00user\x00alice\x00\x00"
    )


def test_builder_integers():
    msg = MessageBuilder(b"x")
    msg.add_int16(65535)
    msg.add_int32(-1)
    msg.add_int64(2**40)
    assert bytes(msg.buf) == (
        b"\xff\xff" + b"\xff\xff\xff\xff" + b"\x00\x00\x01\x00\x00\x00\x00\x00"
    )


@pytest.mark.parametrize(
    "method,value",
    [
        ("add_byte", 256),
        ("add_byte", -1),
        ("add_int16", -1),
        ("add_int16", 65536),
        ("add_int32", 2**31),
        ("add_int32", -(2**31) - 1),
        ("add_uint32", -1),
        ("add_uint32", 2**32),
        ("add_int64", 2**63),
        ("add_char", "ab"),
        ("add_char", ""),
        ("add_string", "nul\x00inside"),
        ("add_string_no_trailing_nul", b"\x00"),
        ("add_string", 42),
    ],
)
def test_builder_rejects(method, value):
    msg = MessageBuilder(b"x")
    with pytest.raises(InterfaceError):
        getattr(msg, method)(value)
    assert msg.buf == bytearray()


def test_builder_string_too_long(monkeypatch):
    monkeypatch.setattr(messages, "MAX_STRING_LENGTH", 3)
    msg = MessageBuilder(b"x")
    msg.add_string("abc")
    with pytest.raises(InterfaceError, match="too long"):
        msg.add_string("abcd")


def test_serialize_too_large(monkeypatch):
    monkeypatch.setattr(messages, "MAX_SEND_LENGTH", 8)
    msg = MessageBuilder(b"x")
    msg.add_string("abc")
    with pytest.raises(InterfaceError, match="larger than 1 GB"):
        msg.serialize()


def backend(code, payload=b""):
    return _create_message(code, payload)


def parse(raw):
    code, data = read_message(BytesIO(raw).read)
    return parse_message(code, data)


@pytest.mark.parametrize(
    "raw,expected",
    [
        (backend(b"R", b"\x00\x00\x00\x00"), AuthenticationOk()),
        (backend(b"R", b"\x00\x00\x00\x03"), AuthenticationCleartextPassword()),
        (
            backend(b"R", b"\x00\x00\x00\x05\x01\x02\x03\x04"),
            AuthenticationMD5Password(b"\x01\x02\x03\x04"),
        ),
        (
            backend(b"K", b"\x00\x00\x10\x92\x00\x00\x00\x63"),
            BackendKeyData(4242, 99),
        ),
        (backend(b"C", b"SELECT 1\x00"), CommandComplete("SELECT 1")),
        (backend(b"n"), NoData()),
        (
            backend(b"S", b"TimeZone\x00UTC\x00"),
            ParameterStatus("TimeZone", "UTC"),
        ),
        (backend(b"Z", b"T"), ReadyForQuery("T")),
        (
            backend(b"t", b"\x00\x02\x00\x00\x00\x17\x00\x00\x00\x19"),
            ParameterDescription([23, 25]),
        ),
    ],
)
def test_parse(raw, expected):
    assert parse(raw) == expected


def test_parse_data_row():
    payload = (
        b"\x00\x03"
        + b"\xff\xff\xff\xff"
        + b"\x00\x00\x00\x00"
        + b"\x00\x00\x00\x03abc"
    )
    assert parse(backend(b"D", payload)) == DataRow([None, b"", b"abc"])


def test_parse_data_row_field_too_long():
    payload = b"\x00\x01" + b"\x40\x00\x00\x00"
    with pytest.raises(ProtocolError, match="result field is too long"):
        parse(backend(b"D", payload))


def test_parse_error_and_notice_are_distinct():
    payload = b"SERROR\x00C42P01\x00Mrelation missing\x00\x00"
    error = parse(backend(b"E", payload))
    notice = parse(backend(b"N", payload))
    assert isinstance(error, ErrorResponse)
    assert not isinstance(error, NoticeResponse)
    assert isinstance(notice, NoticeResponse)
    assert error.fields == (
        ("S", "ERROR"),
        ("C", "42P01"),
        ("M", "relation missing"),
    )
    assert error != notice


def test_parse_response_invalid_utf8():
    msg = parse(backend(b"E", b"S\xc2err\x00\x00"))
    assert msg.fields == (("S", "�err"),)


def test_parse_row_description():
    payload = (
        b"\x00\x01"
        + b"id\x00"
        + b"\x00\x00\x40\x00"  # table oid
        + b"\x00\x01"  # column number
        + b"\x00\x00\x00\x17"  # int4
        + b"\x00\x04"
        + b"\xff\xff\xff\xff"
        + b"\x00\x00"
    )
    msg = parse(backend(b"T", payload))
    assert msg == RowDescription([RowField("id", 16384, 1, 23, 4, -1, 0)])


def test_parse_unknown_code():
    msg = parse(backend(b"?", b"\x01\x02"))
    assert msg == UnknownMessage(b"?", b"\x01\x02")


def test_parse_unknown_authentication():
    msg = parse(backend(b"R", b"\x00\x00\x00\x0a"))
    assert isinstance(msg, UnknownMessage)


def test_parse_short_message():
    with pytest.raises(ProtocolError, match="short message"):
        parse(backend(b"K", b"\x00\x00\x00\x01"))


def test_read_message_short_header():
    with pytest.raises(ProtocolError, match="short read"):
        read_message(BytesIO(b"Z\x00\x00").read)


def test_read_message_short_body():
    with pytest.raises(ProtocolError, match="short read"):
        read_message(BytesIO(b"Z\x00\x00\x00\x05").read)


def test_read_message_too_long_is_skipped():
    stream = BytesIO(backend(b"D", b"x" * 100) + backend(b"Z", b"I"))
    with pytest.raises(ProtocolError, match="max_message_length"):
        read_message(stream.read, max_message_length=10)

    # The oversized message was consumed, so the next one reads cleanly.
    assert read_message(stream.read, max_message_length=10) == (b"Z", b"I")


def test_ready_for_query_repr():
    assert repr(ReadyForQuery("E")) == "<ReadyForQuery Error>"


def test_repr():
    assert repr(CommandComplete("BEGIN")) == "<CommandComplete tag='BEGIN'>"
    assert repr(NoData()) == "<NoData>"


def test_parse_large_oids_are_unsigned():
    msg = parse(backend(b"t", b"\x00\x01\x80\x00\x00\x00"))
    assert msg == ParameterDescription([2**31])

    payload = (
        b"\x00\x01"
        + b"big\x00"
        + b"\xff\xff\xff\xfe"
        + b"\x00\x01"
        + b"\x80\x00\x00\x01"
        + b"\xff\xff"
        + b"\xff\xff\xff\xff"
        + b"\x00\x00"
    )
    msg = parse(backend(b"T", payload))
    assert msg == RowDescription([RowField("big", 2**32 - 2, 1, 2**31 + 1, -1, -1, 0)])
