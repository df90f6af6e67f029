import struct
from io import BytesIO
from os import environ

import pytest

import pglink
from pglink.core import CoreConnection


def backend_message(code, payload=b""):
    return code + struct.pack("!i", len(payload) + 4) + payload


SYNC = b"S\x00\x00\x00\x04"


def cstring(s):
    return s.encode("utf8") + b"\x00"


def response_payload(fields):
    return b"".join(k.encode("ascii") + cstring(v) for k, v in fields) + b"\x00"


class ScriptedPeer:
    """Stands in for both the socket and the file made from it.  Everything
    the server will say is queued up front, and everything the client writes
    is kept in ``sent``.
    """

    def __init__(self):
        self.incoming = bytearray()
        self.after_sync = []
        self.sent = BytesIO()
        self.closed = False

    def makefile(self, mode="r"):
        return self

    def read(self, n):
        chunk = bytes(self.incoming[:n])
        del self.incoming[:n]
        return chunk

    def write(self, data):
        self.sent.write(data)
        for i in range(data.count(SYNC)):
            if self.after_sync:
                self.incoming += self.after_sync.pop(0)

    def flush(self):
        pass

    def close(self):
        self.closed = True

    def queue(self, code, payload=b""):
        if self.after_sync:
            self.after_sync[-1] += backend_message(code, payload)
        else:
            self.incoming += backend_message(code, payload)
        return self

    def on_sync(self):
        """Messages queued after this call can only be read once the client
        has sent another Sync, as a server skips everything up to the Sync
        after an error.
        """
        self.after_sync.append(bytearray())
        return self

    def auth(self, sub_code, extra=b""):
        return self.queue(b"R", struct.pack("!i", sub_code) + extra)

    def auth_ok(self):
        return self.auth(0)

    def parameter_status(self, name, value):
        return self.queue(b"S", cstring(name) + cstring(value))

    def backend_key_data(self, pid, key):
        return self.queue(b"K", struct.pack("!ii", pid, key))

    def ready(self, status="I"):
        return self.queue(b"Z", status.encode("ascii"))

    def error(self, *fields):
        return self.queue(b"E", response_payload(fields))

    def notice(self, *fields):
        return self.queue(b"N", response_payload(fields))

    def parse_complete(self):
        return self.queue(b"1")

    def bind_complete(self):
        return self.queue(b"2")

    def close_complete(self):
        return self.queue(b"3")

    def no_data(self):
        return self.queue(b"n")

    def command_complete(self, tag):
        return self.queue(b"C", cstring(tag))

    def data_row(self, *values):
        payload = bytearray(struct.pack("!H", len(values)))
        for v in values:
            if v is None:
                payload += struct.pack("!i", -1)
            else:
                payload += struct.pack("!i", len(v)) + v
        return self.queue(b"D", bytes(payload))

    def parameter_description(self, *oids):
        payload = struct.pack("!H", len(oids))
        payload += b"".join(struct.pack("!I", oid) for oid in oids)
        return self.queue(b"t", payload)

    def row_description(self, *columns):
        payload = bytearray(struct.pack("!H", len(columns)))
        for name, table_oid, attnum, type_oid in columns:
            payload += cstring(name)
            payload += struct.pack("!IhIhih", table_oid, attnum, type_oid, -1, -1, 0)
        return self.queue(b"T", bytes(payload))

    def startup(self):
        return (
            self.auth_ok()
            .parameter_status("server_version", "16.2")
            .backend_key_data(4242, 99)
            .ready()
        )

    def clear_sent(self):
        self.sent = BytesIO()

    def sent_messages(self, startup=False):
        """The client's messages as ``(code, payload)`` pairs.  With
        ``startup`` the first one is the StartupMessage, whose code is None.
        """
        data = self.sent.getvalue()
        msgs = []
        pos = 0
        if startup:
            (length,) = struct.unpack("!i", data[:4])
            msgs.append((None, data[4:length]))
            pos = length
        while pos < len(data):
            code = data[pos : pos + 1]
            (length,) = struct.unpack("!i", data[pos + 1 : pos + 5])
            msgs.append((code, data[pos + 5 : pos + 1 + length]))
            pos += 1 + length
        return msgs

    def sent_codes(self):
        return [code for code, _ in self.sent_messages()]


PG_ENVIRON = ("PGPROFILING", "PGHOST", "PGPORT", "PGUSER", "PGPASSWORD", "PGDATABASE")


@pytest.fixture
def peer():
    return ScriptedPeer()


@pytest.fixture
def connect_peer(mocker, monkeypatch, peer):
    """Returns a function that opens a connection to the scripted peer."""

    for var in PG_ENVIRON:
        monkeypatch.delenv(var, raising=False)
    mocker.patch("pglink.core._make_socket", return_value=peer)

    def connect(cls=CoreConnection, **kwargs):
        kwargs.setdefault("user", "alice")
        kwargs.setdefault("password", "wonderland")
        kwargs.setdefault("database", "shop")
        return cls(**kwargs)

    return connect


@pytest.fixture
def peer_con(peer, connect_peer):
    peer.startup()
    con = connect_peer()
    peer.clear_sent()
    return con


@pytest.fixture(scope="class")
def db_kwargs():
    db_connect = {"user": "postgres", "password": "pw", "host": "localhost"}

    for kw, var, f in [
        ("host", "PGHOST", str),
        ("user", "PGUSER", str),
        ("password", "PGPASSWORD", str),
        ("port", "PGPORT", int),
    ]:
        try:
            db_connect[kw] = f(environ[var])
        except KeyError:
            pass

    return db_connect


def live_connection(request, cls, db_kwargs):
    try:
        conn = cls(**db_kwargs)
    except (pglink.InterfaceError, pglink.DatabaseError) as e:
        pytest.skip(f"no PostgreSQL server available: {e}")

    def fin():
        try:
            conn.rollback()
        except pglink.Error:
            pass

        try:
            conn.close()
        except pglink.InterfaceError:
            pass

    request.addfinalizer(fin)
    return conn


@pytest.fixture
def con(request, db_kwargs):
    return live_connection(request, pglink.CoreConnection, db_kwargs)


@pytest.fixture
def native_con(request, db_kwargs):
    return live_connection(request, pglink.Connection, db_kwargs)
