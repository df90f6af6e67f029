import logging
import math
import re
from collections import namedtuple
from datetime import datetime as Datetime, timedelta as Timedelta

from dateutil.relativedelta import relativedelta
from dateutil.tz import tzlocal, tzoffset, tzutc

from pglink.exceptions import DataError, InterfaceError


logger = logging.getLogger(__name__)


BOOLEAN = 16
BYTES = 17
NAME = 19
BIGINT = 20
SMALLINT = 21
INTEGER = 23
TEXT = 25
OID = 26
POINT = 600
REAL = 700
FLOAT = 701
INTEGER_ARRAY = 1007
CHAR = 1042
VARCHAR = 1043
DATE = 1082
TIME = 1083
TIMESTAMP = 1114
TIMESTAMPTZ = 1184
INTERVAL = 1186
NUMERIC = 1700
VOID = 2278


MIN_INT2, MAX_INT2 = -(2**15), 2**15
MIN_INT4, MAX_INT4 = -(2**31), 2**31
MIN_INT8, MAX_INT8 = -(2**63), 2**63


def bool_in(data):
    if data in ("t", "true"):
        return True
    elif data in ("f", "false"):
        return False
    else:
        raise DataError(f"not a boolean: {data!r}")


def bool_out(v):
    return "t" if v else "f"


def _int_in(type_name, min_val, max_val):
    def f(data):
        try:
            v = int(data)
        except ValueError:
            raise DataError(f"not an {type_name}: {data!r}")
        if not min_val <= v < max_val:
            raise DataError(f"{data!r} is out of range for {type_name}")
        return v

    return f


def _int_out(type_name, min_val, max_val):
    def f(v):
        if isinstance(v, bool) or not isinstance(v, int):
            raise InterfaceError(f"{v!r} is not an {type_name}")
        if not min_val <= v < max_val:
            raise InterfaceError(f"{v} is out of range for {type_name}")
        return str(v)

    return f


int16_in = _int_in("int16", MIN_INT2, MAX_INT2)
int16_out = _int_out("int16", MIN_INT2, MAX_INT2)
int32_in = _int_in("int32", MIN_INT4, MAX_INT4)
int32_out = _int_out("int32", MIN_INT4, MAX_INT4)
int64_in = _int_in("int64", MIN_INT8, MAX_INT8)
int64_out = _int_out("int64", MIN_INT8, MAX_INT8)
oid_in = _int_in("oid", 0, 2**32)
oid_out = _int_out("oid", 0, 2**32)


def float_in(data):
    try:
        return float(data)
    except ValueError:
        raise DataError(f"not a float: {data!r}")


def float_out(v):
    v = float(v)
    if math.isnan(v):
        return "NaN"
    elif math.isinf(v):
        return "Infinity" if v > 0 else "-Infinity"
    else:
        return repr(v)


# The server sends numeric as exact decimal text; it's read into a float all
# the same, whatever the precision and scale.
numeric_in = float_in
numeric_out = float_out


FLOAT_PATTERN = (
    r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?|[Nn]a[Nn]|[+-]?[Ii]nfinity"
)
POINT_RE = re.compile(rf"\(\s*({FLOAT_PATTERN})\s*,\s*({FLOAT_PATTERN})\s*\)")


def point_in(data):
    m = POINT_RE.fullmatch(data)
    if m is None:
        raise DataError(f"not a point: {data!r}")
    return float(m.group(1)), float(m.group(2))


def point_out(v):
    x, y = v
    return f"({float_out(x)},{float_out(y)})"


def bytes_out(v):
    """Escape format: backslash is doubled, and anything that isn't printable
    ASCII becomes a three digit octal escape.
    """

    cs = []
    for b in v:
        if b < 0x20 or b > 0x7E:
            cs.append(f"\\{b:03o}")
        elif b == 0x5C:
            cs.append("\\\\")
        else:
            cs.append(chr(b))
    return "".join(cs)


OCTAL_RE = re.compile(r"[0-3][0-7][0-7]")


def bytes_in(data):
    if data.startswith("\\x"):
        try:
            return bytes.fromhex(data[2:])
        except ValueError:
            raise DataError(f"bad hex bytea: {data!r}")

    result = bytearray()
    i = 0
    n = len(data)
    while i < n:
        c = data[i]
        if c == "\\":
            if data[i + 1 : i + 2] == "\\":
                result.append(0x5C)
                i += 2
            elif OCTAL_RE.fullmatch(data, i + 1, i + 4):
                result.append(int(data[i + 1 : i + 4], 8))
                i += 4
            else:
                raise DataError(f"bad escape in bytea at position {i}: {data!r}")
        else:
            b = ord(c)
            if b > 0xFF:
                raise DataError(f"bad character in bytea: {c!r}")
            result.append(b)
            i += 1
    return bytes(result)


def string_in(data):
    return data


def string_out(v):
    if not isinstance(v, str):
        raise InterfaceError(f"{v!r} is not a str")
    return v


def date_in(data):
    if data in ("infinity", "-infinity"):
        return data
    try:
        return Datetime.strptime(data, "%Y-%m-%d").date()
    except ValueError:
        raise DataError(f"not a date: {data!r}")


def date_out(v):
    if v in ("infinity", "-infinity"):
        return v
    return f"{v.year:04d}-{v.month:02d}-{v.day:02d}"


def time_in(data):
    # Remove trailing ".microsecs" if present.
    if len(data) > 8 and data[8] == ".":
        data = data[:8]
    try:
        return Datetime.strptime(data, "%H:%M:%S").time()
    except ValueError:
        raise DataError(f"not a time: {data!r}")


def time_out(v):
    return f"{v.hour:02d}:{v.minute:02d}:{v.second:02d}"


def timestamp_in(data):
    if data in ("infinity", "-infinity"):
        return data
    # Remove trailing ".microsecs" if present.
    if len(data) > 19 and data[19] == ".":
        data = data[:19]
    try:
        return Datetime.strptime(data, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        raise DataError(f"not a timestamp: {data!r}")


def timestamp_out(v):
    if v in ("infinity", "-infinity"):
        return v
    return f"{date_out(v)} {time_out(v)}"


TZ_SUFFIX_RE = re.compile(r"(.*?)([+-])(\d\d)(?::(\d\d))?(?::(\d\d))?")


def timestamptz_in(data):
    m = TZ_SUFFIX_RE.fullmatch(data)
    if m is None:
        # No zone suffix, so the best guess is local time.
        tz = tzlocal()
    else:
        data, sign, hh, mm, ss = m.groups()
        offset = int(hh) * 3600 + int(mm or 0) * 60 + int(ss or 0)
        if offset == 0:
            tz = tzutc()
        else:
            tz = tzoffset(None, -offset if sign == "-" else offset)

    ts = timestamp_in(data)
    if isinstance(ts, str):
        return ts
    return ts.replace(tzinfo=tz)


def timestamptz_out(v):
    if v in ("infinity", "-infinity"):
        return v

    offset = v.utcoffset()
    if offset is None:
        offset = tzlocal().utcoffset(v)

    total = int(offset.total_seconds())
    sign = "-" if total < 0 else "+"
    minutes, ss = divmod(abs(total), 60)
    hh, mm = divmod(minutes, 60)
    suffix = f"{sign}{hh:02d}"
    if mm != 0 or ss != 0:
        suffix += f":{mm:02d}"
    if ss != 0:
        suffix += f":{ss:02d}"
    return timestamp_out(v) + suffix


INTERVAL_UNITS = {
    "year": "years",
    "years": "years",
    "mon": "months",
    "mons": "months",
    "month": "months",
    "months": "months",
    "day": "days",
    "days": "days",
    "hour": "hours",
    "hours": "hours",
    "min": "minutes",
    "mins": "minutes",
    "minute": "minutes",
    "minutes": "minutes",
    "sec": "seconds",
    "secs": "seconds",
    "second": "seconds",
    "seconds": "seconds",
}


INTERVAL_TIME_RE = re.compile(r"([+-]?)(\d+):(\d\d)(?::(\d\d)(?:\.(\d+))?)?")

INTERVAL_TIME_UNITS = {"hours": 3600000000, "minutes": 60000000, "seconds": 1000000}


def _interval_time_in(k, interval_str):
    m = INTERVAL_TIME_RE.fullmatch(k)
    if m is None:
        raise DataError(f"bad interval: {interval_str!r}")

    sign_str, hours, minutes, seconds, frac = m.groups()
    total = (int(hours) * 60 + int(minutes)) * 60 + int(seconds or 0)
    total = total * 1000000 + int((frac or "")[:6].ljust(6, "0"))
    return -total if sign_str == "-" else total


def _make_interval(kwargs, microseconds):
    v = relativedelta(**kwargs)

    # relativedelta() carries hours past 23 into days, but the server keeps
    # the day and time parts apart, so the time part is set afterwards.
    sign = -1 if microseconds < 0 else 1
    seconds, us = divmod(abs(microseconds), 1000000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    v.hours = sign * hours
    v.minutes = sign * minutes
    v.seconds = sign * seconds
    v.microseconds = sign * us
    return v


def interval_in(data):
    """Parses the postgres interval style, eg. ``1 year 2 mons 3 days
    04:05:06``, as well as the ``N seconds`` form that ``interval_out``
    writes.
    """

    kwargs = {}
    microseconds = 0
    curr_val = None
    for k in data.split():
        if ":" in k:
            microseconds += _interval_time_in(k, data)

        elif curr_val is None:
            try:
                curr_val = int(k)
            except ValueError:
                raise DataError(f"bad interval: {data!r}")

        else:
            try:
                name = INTERVAL_UNITS[k]
            except KeyError:
                raise DataError(f"bad interval unit {k!r} in {data!r}")
            if name in INTERVAL_TIME_UNITS:
                microseconds += curr_val * INTERVAL_TIME_UNITS[name]
            else:
                kwargs[name] = kwargs.get(name, 0) + curr_val
            curr_val = None

    if curr_val is not None:
        raise DataError(f"bad interval: {data!r}")

    return _make_interval(kwargs, microseconds)


def interval_out(v):
    """Always ``"%d years %d mons %d days %d seconds"``, which the server
    accepts but never produces itself.  Sub-second precision is dropped.
    """

    if isinstance(v, Timedelta):
        v = relativedelta(days=v.days, seconds=v.seconds)
    seconds = v.hours * 3600 + v.minutes * 60 + v.seconds
    return f"{v.years} years {v.months} mons {v.days} days {seconds} seconds"


def array_in(data):
    """Splits ``{a,b,c}`` into its elements.  Elements aren't unescaped, that's
    up to the caller.
    """

    if len(data) < 2 or data[0] != "{" or data[-1] != "}":
        raise DataError(f"not an array: {data!r}")
    inner = data[1:-1]
    return [] if inner == "" else inner.split(",")


def array_out(elements):
    """Joins already escaped elements into ``{a,b,c}``."""
    return "{" + ",".join(elements) + "}"


def int32_array_in(data):
    return [None if e == "NULL" else int32_in(e) for e in array_in(data)]


def int32_array_out(v):
    return array_out(["NULL" if e is None else int32_out(e) for e in v])


def unit_in(data):
    return None


def unit_out(v):
    return ""


TypeCodec = namedtuple("TypeCodec", ("oid", "name", "encode", "decode"))


PG_TYPES = {}


def register_type(codec):
    """Adds a converter for a type OID.  Entries can't be replaced once
    they're registered.
    """

    if codec.oid in PG_TYPES:
        raise InterfaceError(
            f"a converter for OID {codec.oid} is already registered"
        )
    PG_TYPES[codec.oid] = codec


for _codec in (
    TypeCodec(BOOLEAN, "bool", bool_out, bool_in),
    TypeCodec(BYTES, "bytea", bytes_out, bytes_in),
    TypeCodec(NAME, "string", string_out, string_in),
    TypeCodec(BIGINT, "int64", int64_out, int64_in),
    TypeCodec(SMALLINT, "int16", int16_out, int16_in),
    TypeCodec(INTEGER, "int32", int32_out, int32_in),
    TypeCodec(TEXT, "string", string_out, string_in),
    TypeCodec(OID, "oid", oid_out, oid_in),
    TypeCodec(POINT, "point", point_out, point_in),
    TypeCodec(REAL, "float", float_out, float_in),
    TypeCodec(FLOAT, "float", float_out, float_in),
    TypeCodec(INTEGER_ARRAY, "int32_array", int32_array_out, int32_array_in),
    TypeCodec(CHAR, "string", string_out, string_in),
    TypeCodec(VARCHAR, "string", string_out, string_in),
    TypeCodec(DATE, "date", date_out, date_in),
    TypeCodec(TIME, "time", time_out, time_in),
    TypeCodec(TIMESTAMP, "timestamp", timestamp_out, timestamp_in),
    TypeCodec(TIMESTAMPTZ, "timestamptz", timestamptz_out, timestamptz_in),
    TypeCodec(INTERVAL, "interval", interval_out, interval_in),
    TypeCodec(NUMERIC, "float", numeric_out, numeric_in),
    TypeCodec(VOID, "unit", unit_out, unit_in),
):
    register_type(_codec)


def get_codec(oid):
    try:
        return PG_TYPES[oid]
    except KeyError:
        # For unknown types, look at <postgresql/catalog/pg_type.h>.
        raise DataError(f"unknown type for OID {oid}")


def name_of_type(oid, modifier=None):
    """The semantic name of a type.  For numeric the modifier carries the
    precision, but the name is "float" whatever it says.
    """

    if oid == NUMERIC and modifier not in (None, -1):
        logger.debug("numeric modifier = %d", modifier)
    return get_codec(oid).name


def decode_value(oid, data):
    """Converts one field from its wire text to a Python value.  ``None``
    stays ``None``.
    """

    if data is None:
        return None
    codec = get_codec(oid)
    if isinstance(data, (bytes, bytearray)):
        try:
            data = data.decode("utf8")
        except UnicodeDecodeError as e:
            raise DataError(f"field of type OID {oid} isn't valid UTF-8") from e
    return codec.decode(data)


def encode_value(oid, value):
    """Converts a Python value to the wire text for the type ``oid``.  ``None``
    stays ``None`` and is sent as NULL.
    """

    if value is None:
        return None
    text = get_codec(oid).encode(value)
    if "\x00" in text:
        raise InterfaceError(f"string contains ASCII NUL character: {text!r}")
    return text
