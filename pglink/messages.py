from collections import namedtuple
from struct import Struct

from pglink.exceptions import InterfaceError, ProtocolError


def pack_funcs(fmt):
    struc = Struct(f"!{fmt}")
    return struc.pack, struc.unpack_from


B_pack, B_unpack = pack_funcs("B")
H_pack, H_unpack = pack_funcs("H")
h_pack, h_unpack = pack_funcs("h")
i_pack, i_unpack = pack_funcs("i")
I_pack, I_unpack = pack_funcs("I")
q_pack, q_unpack = pack_funcs("q")
ci_pack, ci_unpack = pack_funcs("ci")


NULL_BYTE = b"\x00"

# Longest text that may be written into a message.
MAX_STRING_LENGTH = 0x3FFFFFFF

# Outbound messages (length word included) must be shorter than 1 GiB.
MAX_SEND_LENGTH = 0x40000000

# Default ceiling on the payload of a message accepted from the backend.
MAX_MESSAGE_LENGTH = 0x3FFFFFFF

# Protocol version 3.0
PROTOCOL_VERSION = 196608

# Backend message codes
AUTHENTICATION_REQUEST = b"R"
BACKEND_KEY_DATA = b"K"
BIND_COMPLETE = b"2"
CLOSE_COMPLETE = b"3"
COMMAND_COMPLETE = b"C"
DATA_ROW = b"D"
EMPTY_QUERY_RESPONSE = b"I"
ERROR_RESPONSE = b"E"
NO_DATA = b"n"
NOTICE_RESPONSE = b"N"
PARAMETER_DESCRIPTION = b"t"
PARAMETER_STATUS = b"S"
PARSE_COMPLETE = b"1"
READY_FOR_QUERY = b"Z"
ROW_DESCRIPTION = b"T"

# Frontend message codes
BIND = b"B"
CLOSE = b"C"
DESCRIBE = b"D"
EXECUTE = b"E"
FLUSH = b"H"
PARSE = b"P"
PASSWORD = b"p"
SYNC = b"S"
TERMINATE = b"X"

# DESCRIBE and CLOSE targets
STATEMENT = b"S"
PORTAL = b"P"

# Authentication sub-codes
AUTH_OK = 0
AUTH_KERBEROS_V5 = 2
AUTH_CLEARTEXT_PASSWORD = 3
AUTH_CRYPT_PASSWORD = 4
AUTH_MD5_PASSWORD = 5
AUTH_SCM_CREDENTIAL = 6


def _create_message(code, data=b""):
    return code + i_pack(len(data) + 4) + data


FLUSH_MSG = _create_message(FLUSH)
SYNC_MSG = _create_message(SYNC)
TERMINATE_MSG = _create_message(TERMINATE)


def _to_bytes(s):
    if isinstance(s, str):
        return s.encode("utf8")
    elif isinstance(s, (bytes, bytearray)):
        return bytes(s)
    else:
        raise InterfaceError(f"can't write a value of type {type(s)} as text")


class MessageBuilder:
    """Accumulates the payload of one frontend message.

    ``code`` is the single byte message type.  It's ``None`` only for the
    StartupMessage, which has no type byte.  Every ``add_*`` method checks its
    argument and raises ``InterfaceError`` rather than truncate it.
    """

    def __init__(self, code=None):
        self.code = code
        self.buf = bytearray()

    def add_byte(self, i):
        if not 0 <= i <= 255:
            raise InterfaceError(f"byte {i} is outside range [0..255].")
        self.buf.extend(B_pack(i))

    def add_char(self, c):
        c = _to_bytes(c)
        if len(c) != 1:
            raise InterfaceError(f"{c!r} is not a single byte.")
        self.buf.extend(c)

    def add_int16(self, i):
        if not 0 <= i <= 65535:
            raise InterfaceError("int16 is outside range [0..65535].")
        self.buf.extend(H_pack(i))

    def add_int32(self, i):
        if not -(2**31) <= i < 2**31:
            raise InterfaceError(f"int32 {i} is out of range.")
        self.buf.extend(i_pack(i))

    def add_uint32(self, i):
        if not 0 <= i < 2**32:
            raise InterfaceError(f"uint32 {i} is out of range.")
        self.buf.extend(I_pack(i))

    def add_int64(self, i):
        if not -(2**63) <= i < 2**63:
            raise InterfaceError(f"int64 {i} is out of range.")
        self.buf.extend(q_pack(i))

    def add_string_no_trailing_nul(self, s):
        s = _to_bytes(s)
        if NULL_BYTE in s:
            raise InterfaceError(f"string contains ASCII NUL character: {s!r}")
        if len(s) > MAX_STRING_LENGTH:
            raise InterfaceError("string is too long.")
        self.buf.extend(s)

    def add_string(self, s):
        self.add_string_no_trailing_nul(s)
        self.buf.extend(NULL_BYTE)

    def serialize(self):
        length = len(self.buf) + 4
        if length >= MAX_SEND_LENGTH:
            raise InterfaceError("message is larger than 1 GB")
        prefix = b"" if self.code is None else self.code
        return prefix + i_pack(length) + bytes(self.buf)


def _skip(read, n):
    bufsize = 65536
    while n > 0:
        m = min(n, bufsize)
        if len(read(m)) != m:
            raise ProtocolError("short read while skipping an oversized message")
        n -= m


def read_message(read, max_message_length=MAX_MESSAGE_LENGTH):
    """Reads one backend message using ``read(n)``.  Returns ``(code, data)``
    where ``data`` is the payload without the length word.
    """

    header = read(5)
    if len(header) != 5:
        raise ProtocolError("short read: server closed the connection")
    code, length = ci_unpack(header)
    length -= 4
    if length < 0:
        raise ProtocolError(f"invalid message length {length + 4}")

    if length > max_message_length:
        # Skip the message so we stay in sync with the stream.
        _skip(read, length)
        raise ProtocolError("back-end message is longer than max_message_length")

    data = read(length)
    if len(data) != length:
        raise ProtocolError("short read: server closed the connection")
    return code, data


class Reader:
    """A cursor over a copy of one message payload."""

    def __init__(self, data):
        self.data = bytes(data)
        self.pos = 0

    def _take(self, n, where):
        end = self.pos + n
        if end > len(self.data):
            raise ProtocolError(f"parse_message: {where}: short message")
        chunk = self.data[self.pos : end]
        self.pos = end
        return chunk

    def get_char(self):
        return self._take(1, "get_char").decode("latin1")

    def get_int16(self):
        return h_unpack(self._take(2, "get_int16"))[0]

    def get_uint16(self):
        return H_unpack(self._take(2, "get_uint16"))[0]

    def get_int32(self):
        return i_unpack(self._take(4, "get_int32"))[0]

    def get_uint32(self):
        return I_unpack(self._take(4, "get_uint32"))[0]

    def get_bytes(self, n):
        return self._take(n, "get_bytes")

    def get_string(self):
        null_idx = self.data.find(NULL_BYTE, self.pos)
        if null_idx == -1:
            raise ProtocolError("parse_message: get_string: short message")
        s = self.data[self.pos : null_idx]
        self.pos = null_idx + 1
        return s.decode("utf8", errors="replace")


class ReceiveMessage:
    __slots__ = ()
    _fields = ()
    code = None

    def _values(self):
        return tuple(getattr(self, n) for n in self._fields)

    def __eq__(self, other):
        return type(self) is type(other) and self._values() == other._values()

    def __repr__(self):
        args = ", ".join(f"{n}={getattr(self, n)!r}" for n in self._fields)
        name = type(self).__name__
        return f"<{name} {args}>" if args else f"<{name}>"

    @classmethod
    def create_from_data(cls, reader):
        return cls()


class AuthenticationOk(ReceiveMessage):
    __slots__ = ()
    code = AUTHENTICATION_REQUEST


class AuthenticationKerberosV5(ReceiveMessage):
    __slots__ = ()
    code = AUTHENTICATION_REQUEST


class AuthenticationCleartextPassword(ReceiveMessage):
    __slots__ = ()
    code = AUTHENTICATION_REQUEST


class AuthenticationCryptPassword(ReceiveMessage):
    __slots__ = _fields = ("salt",)
    code = AUTHENTICATION_REQUEST

    def __init__(self, salt):
        self.salt = salt

    @classmethod
    def create_from_data(cls, reader):
        return cls(reader.get_bytes(2))


class AuthenticationMD5Password(ReceiveMessage):
    __slots__ = _fields = ("salt",)
    code = AUTHENTICATION_REQUEST

    def __init__(self, salt):
        self.salt = salt

    @classmethod
    def create_from_data(cls, reader):
        return cls(reader.get_bytes(4))


class AuthenticationSCMCredential(ReceiveMessage):
    __slots__ = ()
    code = AUTHENTICATION_REQUEST


AUTHENTICATION_TYPES = {
    AUTH_OK: AuthenticationOk,
    AUTH_KERBEROS_V5: AuthenticationKerberosV5,
    AUTH_CLEARTEXT_PASSWORD: AuthenticationCleartextPassword,
    AUTH_CRYPT_PASSWORD: AuthenticationCryptPassword,
    AUTH_MD5_PASSWORD: AuthenticationMD5Password,
    AUTH_SCM_CREDENTIAL: AuthenticationSCMCredential,
}


class BackendKeyData(ReceiveMessage):
    __slots__ = _fields = ("pid", "key")
    code = BACKEND_KEY_DATA

    def __init__(self, pid, key):
        self.pid = pid
        self.key = key

    # Byte1('K') - Identifier.
    # Int32(12) - Message length, including self.
    # Int32 - The process ID of this backend.
    # Int32 - The secret key of this backend.
    @classmethod
    def create_from_data(cls, reader):
        pid = reader.get_int32()
        key = reader.get_int32()
        return cls(pid, key)


class ParseComplete(ReceiveMessage):
    __slots__ = ()
    code = PARSE_COMPLETE


class BindComplete(ReceiveMessage):
    __slots__ = ()
    code = BIND_COMPLETE


class CloseComplete(ReceiveMessage):
    __slots__ = ()
    code = CLOSE_COMPLETE


class EmptyQueryResponse(ReceiveMessage):
    __slots__ = ()
    code = EMPTY_QUERY_RESPONSE


class NoData(ReceiveMessage):
    __slots__ = ()
    code = NO_DATA


class CommandComplete(ReceiveMessage):
    __slots__ = _fields = ("tag",)
    code = COMMAND_COMPLETE

    def __init__(self, tag):
        self.tag = tag

    @classmethod
    def create_from_data(cls, reader):
        return cls(reader.get_string())


class DataRow(ReceiveMessage):
    """``fields`` is a tuple with one entry per column, ``None`` for NULL,
    otherwise the raw bytes of the value.
    """

    __slots__ = _fields = ("fields",)
    code = DATA_ROW

    def __init__(self, fields):
        self.fields = tuple(fields)

    # Byte1('D') - Identifier.
    # Int32 - Message length, including self.
    # Int16 - Number of column values that follow (possibly zero).
    # For each column:
    #   Int32 - Length of the column value, not including itself. -1 is NULL.
    #   Byten - Value of the column.
    @classmethod
    def create_from_data(cls, reader):
        fields = []
        for i in range(reader.get_uint16()):
            vlen = reader.get_int32()
            if vlen < 0:
                fields.append(None)
            elif vlen > MAX_STRING_LENGTH:
                raise ProtocolError("result field is too long")
            else:
                fields.append(reader.get_bytes(vlen))
        return cls(fields)


def _read_response_fields(reader):
    # Any number of these, followed by a zero byte:
    #   Byte1 - code identifying the field type
    #   String - field value
    fields = []
    while True:
        field_type = reader.get_char()
        if field_type == "\x00":
            return tuple(fields)
        fields.append((field_type, reader.get_string()))


class ResponseMessage(ReceiveMessage):
    """Base of ErrorResponse and NoticeResponse.  ``fields`` is a tuple of
    ``(code, text)`` pairs, eg. ``("S", "ERROR")``, in the order sent.
    """

    __slots__ = _fields = ("fields",)

    def __init__(self, fields):
        self.fields = tuple(fields)

    @classmethod
    def create_from_data(cls, reader):
        return cls(_read_response_fields(reader))


class ErrorResponse(ResponseMessage):
    __slots__ = ()
    code = ERROR_RESPONSE


class NoticeResponse(ResponseMessage):
    __slots__ = ()
    code = NOTICE_RESPONSE


class ParameterDescription(ReceiveMessage):
    __slots__ = _fields = ("type_oids",)
    code = PARAMETER_DESCRIPTION

    def __init__(self, type_oids):
        self.type_oids = tuple(type_oids)

    @classmethod
    def create_from_data(cls, reader):
        count = reader.get_uint16()
        return cls(reader.get_uint32() for i in range(count))


class ParameterStatus(ReceiveMessage):
    __slots__ = _fields = ("name", "value")
    code = PARAMETER_STATUS

    def __init__(self, name, value):
        self.name = name
        self.value = value

    @classmethod
    def create_from_data(cls, reader):
        name = reader.get_string()
        value = reader.get_string()
        return cls(name, value)


class ReadyForQuery(ReceiveMessage):
    __slots__ = _fields = ("status",)
    code = READY_FOR_QUERY

    STATUSES = {"I": "Idle", "T": "inTransaction", "E": "Error"}

    def __init__(self, status):
        self.status = status

    def __repr__(self):
        return f"<ReadyForQuery {self.STATUSES.get(self.status, self.status)}>"

    @classmethod
    def create_from_data(cls, reader):
        return cls(reader.get_char())


RowField = namedtuple(
    "RowField",
    (
        "name",
        "table_oid",
        "column_attrnum",
        "type_oid",
        "type_size",
        "type_modifier",
        "format",
    ),
)


class RowDescription(ReceiveMessage):
    __slots__ = _fields = ("fields",)
    code = ROW_DESCRIPTION

    def __init__(self, fields):
        self.fields = tuple(fields)

    # Byte1('T') - Identifier.
    # Int32 - Message length, including self.
    # Int16 - Number of fields in a row (can be zero).
    # For each field:
    #   String - The field name.
    #   Int32 - Table OID, or zero (unsigned).
    #   Int16 - Attribute number of the column, or zero.
    #   Int32 - Data type OID (unsigned).
    #   Int16 - Data type size, negative for variable width types.
    #   Int32 - Type modifier.
    #   Int16 - Format code, 0 for text.
    @classmethod
    def create_from_data(cls, reader):
        fields = []
        for i in range(reader.get_uint16()):
            fields.append(
                RowField(
                    reader.get_string(),
                    reader.get_uint32(),
                    reader.get_int16(),
                    reader.get_uint32(),
                    reader.get_int16(),
                    reader.get_int32(),
                    reader.get_int16(),
                )
            )
        return cls(fields)


class UnknownMessage(ReceiveMessage):
    __slots__ = _fields = ("message_code", "data")

    def __init__(self, message_code, data):
        self.message_code = message_code
        self.data = data


def _parse_authentication(code, reader):
    auth_code = reader.get_int32()
    try:
        cls = AUTHENTICATION_TYPES[auth_code]
    except KeyError:
        return UnknownMessage(code, reader.data)
    return cls.create_from_data(reader)


MESSAGE_TYPES = {
    cls.code: cls
    for cls in (
        BackendKeyData,
        BindComplete,
        CloseComplete,
        CommandComplete,
        DataRow,
        EmptyQueryResponse,
        ErrorResponse,
        NoData,
        NoticeResponse,
        ParameterDescription,
        ParameterStatus,
        ParseComplete,
        ReadyForQuery,
        RowDescription,
    )
}


def parse_message(code, data):
    """Turns the ``(code, data)`` pair from ``read_message`` into one of the
    ``ReceiveMessage`` subclasses.  An unrecognised code gives an
    ``UnknownMessage`` rather than an error.
    """

    reader = Reader(data)
    if code == AUTHENTICATION_REQUEST:
        return _parse_authentication(code, reader)

    try:
        cls = MESSAGE_TYPES[code]
    except KeyError:
        return UnknownMessage(code, reader.data)
    return cls.create_from_data(reader)
