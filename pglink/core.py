import getpass
import logging
import random
import socket
import sys
import uuid
from collections import deque, namedtuple
from hashlib import md5
from os import environ

from pglink.converters import BIGINT, decode_value
from pglink.exceptions import DatabaseError, InterfaceError, ProtocolError
from pglink.messages import (
    BIND,
    CLOSE,
    DESCRIBE,
    EXECUTE,
    FLUSH_MSG,
    MAX_MESSAGE_LENGTH,
    PARSE,
    PASSWORD,
    PORTAL,
    PROTOCOL_VERSION,
    STATEMENT,
    SYNC_MSG,
    TERMINATE_MSG,
    AuthenticationCleartextPassword,
    AuthenticationCryptPassword,
    AuthenticationKerberosV5,
    AuthenticationMD5Password,
    AuthenticationOk,
    AuthenticationSCMCredential,
    BackendKeyData,
    BindComplete,
    CloseComplete,
    CommandComplete,
    DataRow,
    EmptyQueryResponse,
    ErrorResponse,
    MessageBuilder,
    NoData,
    NoticeResponse,
    ParameterDescription,
    ParameterStatus,
    ParseComplete,
    ReadyForQuery,
    RowDescription,
    parse_message,
    read_message,
)
from pglink.profiling import profile_op

# Copyright (c) 2007-2009, Mathieu Fenniak
# Copyright (c) The Contributors
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are
# met:
#
# * Redistributions of source code must retain the above copyright notice,
# this list of conditions and the following disclaimer.
# * Redistributions in binary form must reproduce the above copyright notice,
# this list of conditions and the following disclaimer in the documentation
# and/or other materials provided with the distribution.
# * The name of the author may not be used to endorse or promote products
# derived from this software without specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT OWNER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.

__author__ = "Mathieu Fenniak"


DEFAULT_UNIX_DOMAIN_SOCKET_DIR = "/tmp"
DEFAULT_PORT = 5432
DEFAULT_USER = "postgres"

# ErrorResponse codes
RESPONSE_SEVERITY = "S"  # always present
RESPONSE_CODE = "C"  # always present
RESPONSE_MSG = "M"  # always present


ResultDescription = namedtuple(
    "ResultDescription",
    ("name", "table", "column", "field_type", "length", "modifier"),
)

ParamDescription = namedtuple("ParamDescription", ("param_type",))


def _resolve_user(user):
    if user is not None:
        return user
    try:
        return environ["PGUSER"]
    except KeyError:
        pass
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return DEFAULT_USER


def _resolve_port(port):
    if port is not None:
        return port
    try:
        return int(environ["PGPORT"])
    except (KeyError, ValueError):
        return DEFAULT_PORT


def _make_address(host, port, unix_domain_socket_dir):
    """Returns ``(family, address)`` for the socket to connect to.  With no
    host it's the server's Unix domain socket in ``unix_domain_socket_dir``.
    """

    if host is None:
        return socket.AF_UNIX, f"{unix_domain_socket_dir}/.s.PGSQL.{port}"

    try:
        addrinfos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise InterfaceError(f"unknown host: {host}") from e

    candidates = []
    for family, _, _, _, sockaddr in addrinfos:
        if family in (socket.AF_INET, socket.AF_INET6):
            candidates.append((family, sockaddr))
        elif family == getattr(socket, "AF_UNIX", None):
            raise InterfaceError(f"resolving {host} gave a Unix domain address")

    if len(candidates) == 0:
        raise InterfaceError(f"unknown host: {host}")

    return random.choice(candidates)


def _make_socket(family, address):
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.connect(address)
    except OSError as e:
        sock.close()
        raise InterfaceError(f"Can't create a connection to {address}") from e
    return sock


def _to_bytes(v):
    if isinstance(v, str):
        return v.encode("utf8")
    return v


def md5_password(password, user, salt):
    """The reply to an MD5 password challenge:
    ``"md5" + md5hex(md5hex(password + user) + salt)``
    """

    inner = md5(_to_bytes(password) + _to_bytes(user)).hexdigest().encode("ascii")
    return b"md5" + md5(inner + salt).hexdigest().encode("ascii")


def _param_bytes(value):
    if isinstance(value, str):
        return value.encode("utf8")
    elif isinstance(value, (bytes, bytearray)):
        return bytes(value)
    else:
        raise InterfaceError(
            f"parameters must be str, bytes or None, not {type(value)}. Use "
            f"pglink.converters.encode_value to convert other types."
        )


def _result_descriptions(msg):
    return [
        ResultDescription(
            name=f.name,
            table=f.table_oid or None,
            column=f.column_attrnum or None,
            field_type=f.type_oid,
            length=f.type_size,
            modifier=f.type_modifier,
        )
        for f in msg.fields
    ]


class CoreConnection:
    """A connection that's been through the startup and authentication
    exchange and is ready for extended-query protocol requests.

    Each argument left as ``None`` is taken from the environment
    (``PGUSER``, ``PGPASSWORD``, ``PGDATABASE``, ``PGHOST``, ``PGPORT``) or
    failing that a default.  With no host, the connection is made to the
    Unix domain socket in ``unix_domain_socket_dir``.

    ``verbosity`` controls the logging of server error responses: 0 logs
    nothing, 1 logs those with severity ERROR, FATAL or PANIC, and 2 logs all
    of them along with their extra fields.  ``debug_protocol`` logs every
    message sent and received at DEBUG level.
    """

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def __init__(
        self,
        user=None,
        host=None,
        port=None,
        password=None,
        database=None,
        unix_domain_socket_dir=DEFAULT_UNIX_DOMAIN_SOCKET_DIR,
        max_message_length=MAX_MESSAGE_LENGTH,
        verbosity=1,
        logger=None,
        debug_protocol=False,
    ):
        self.user = _resolve_user(user)
        if password is None:
            password = environ.get("PGPASSWORD", "")
        self.password = password
        if database is None:
            database = environ.get("PGDATABASE", self.user)
        self.database = database
        if host is None:
            host = environ.get("PGHOST")
        self.host = host
        self.port = _resolve_port(port)

        self.id = uuid.uuid4().hex
        if logger is None:
            logger = f"pglink.connection.{self.id[:8]}"
        if isinstance(logger, str):
            logger = logging.getLogger(logger)
        self._logger = logger
        self.verbosity = verbosity
        self.debug_protocol = debug_protocol
        self.max_message_length = max_message_length

        self._private_data = None
        self.backend_key_data = None
        self.parameter_statuses = {}
        self.notices = deque(maxlen=100)
        self.transaction_status = None
        self._usock = None
        self._sock = None

        family, address = _make_address(self.host, self.port, unix_domain_socket_dir)

        detail = [
            "user",
            self.user,
            "database",
            self.database,
            "host",
            "unix" if self.host is None else self.host,
            "port",
            str(self.port),
            "prog",
            sys.argv[0] if sys.argv else "",
        ]
        profile_op(self.id, "connect", detail, lambda: self._connect(family, address))

    @property
    def private_data(self):
        """A value the caller has attached to the connection with
        ``set_private_data``, or ``None``.
        """
        return self._private_data

    def set_private_data(self, data):
        self._private_data = data

    def _connect(self, family, address):
        self._usock = _make_socket(family, address)
        self._sock = self._usock.makefile(mode="rwb")
        try:
            self._startup()
        except Exception:
            self._sock.close()
            self._usock.close()
            self._sock = None
            raise

    def _startup(self):
        # Int32 - Message length, including self.
        # Int32(196608) - Protocol version number.  Version 3.0.
        # Any number of key/value pairs, terminated by a zero byte:
        #   String - A parameter name (user, database, or options)
        #   String - Parameter value
        msg = MessageBuilder()
        msg.add_int32(PROTOCOL_VERSION)
        msg.add_string("user")
        msg.add_string(self.user)
        msg.add_string("database")
        msg.add_string(self.database)
        msg.add_byte(0)
        self.send_message(msg)

        # Loop around here until the server sends ReadyForQuery.
        while True:
            msg = self._receive_message()

            if isinstance(msg, ReadyForQuery):
                return

            elif isinstance(msg, BackendKeyData):
                self.backend_key_data = (msg.pid, msg.key)

            elif isinstance(msg, (AuthenticationOk, ParameterStatus, NoticeResponse)):
                pass

            elif isinstance(msg, AuthenticationCleartextPassword):
                self._send_password(_to_bytes(self.password))

            elif isinstance(msg, AuthenticationMD5Password):
                self._send_password(md5_password(self.password, self.user, msg.salt))

            elif isinstance(msg, AuthenticationKerberosV5):
                raise InterfaceError("Kerberos authentication not supported")

            elif isinstance(msg, AuthenticationCryptPassword):
                raise InterfaceError("crypt password authentication not supported")

            elif isinstance(msg, AuthenticationSCMCredential):
                raise InterfaceError("SCM Credential authentication not supported")

            elif isinstance(msg, ErrorResponse):
                self._pg_error(msg.fields, resync=True)

            # Anything else is ignored.

    def _send_password(self, password):
        msg = MessageBuilder(PASSWORD)
        msg.add_string(password)
        self.send_message(msg)

    def _check_open(self):
        if self._sock is None:
            raise InterfaceError("connection is closed")

    def _write(self, data):
        try:
            self._sock.write(data)
        except OSError as e:
            raise ProtocolError("network error on write") from e

    def _flush(self):
        try:
            self._sock.flush()
        except OSError as e:
            raise ProtocolError("network error on flush") from e

    def _read(self, n):
        try:
            return self._sock.read(n)
        except OSError as e:
            raise ProtocolError("network error on read") from e

    def _send(self, *datas):
        self._check_open()
        for data in datas:
            if self.debug_protocol:
                self._log_outbound(data)
            self._write(data)

    def _log_outbound(self, data):
        # The StartupMessage has no tag, so it starts with its length.
        if data[:1] == b"\x00":
            tag, payload = "startup", data[4:]
        else:
            tag, payload = data[:1].decode("ascii"), data[5:]
        self._logger.debug("> %s %d %r", tag, len(payload) + 4, payload)

    def send_message(self, *msgs):
        """Sends one or more ``MessageBuilder`` messages.  They're all
        serialized before anything is written, so a message that can't be
        built leaves the stream untouched.
        """
        self._send(*[msg.serialize() for msg in msgs])

    def flush_msg(self):
        self._send(FLUSH_MSG)
        self._flush()

    def _receive_message(self):
        self._check_open()
        # Anything written must reach the server before we wait for a reply.
        self._flush()
        code, data = read_message(self._read, self.max_message_length)
        msg = parse_message(code, data)
        if self.debug_protocol:
            self._logger.debug("< %r", msg)

        if isinstance(msg, ReadyForQuery):
            self.transaction_status = msg.status
        elif isinstance(msg, ParameterStatus):
            self.parameter_statuses[msg.name] = msg.value
        elif isinstance(msg, NoticeResponse):
            self.notices.append(msg.fields)
        return msg

    def _log_error_response(self, fields):
        if self.verbosity < 1:
            return

        fields_dict = dict(fields)
        try:
            severity = fields_dict[RESPONSE_SEVERITY]
            code = fields_dict[RESPONSE_CODE]
            message = fields_dict[RESPONSE_MSG]
        except KeyError:
            self._logger.warning("'Always present' field is missing in error message")
        else:
            if self.verbosity > 1 or severity in ("ERROR", "FATAL", "PANIC"):
                self._logger.error("%s: %s: %s", severity, code, message)

        if self.verbosity > 1:
            for field_type, field in fields:
                if field_type not in (RESPONSE_SEVERITY, RESPONSE_CODE, RESPONSE_MSG):
                    self._logger.error("%s: %s", field_type, field)

    def _sync_to_ready(self):
        while not isinstance(self._receive_message(), ReadyForQuery):
            pass

    def _pg_error(self, fields, resync=False):
        """Raises a DatabaseError for an ErrorResponse.  With ``resync``, the
        messages up to and including the next ReadyForQuery are read first so
        that the connection is ready for the next request.
        """

        self._log_error_response(fields)
        error = DatabaseError(list(fields))
        if resync:
            try:
                self._sync_to_ready()
            except ProtocolError as e:
                # eg. after a FATAL error the server closes the connection
                raise error from e
        raise error

    def close(self):
        """Sends the Terminate message and closes the socket.  Using the
        connection afterwards, or closing it again, raises an InterfaceError.
        """
        self._check_open()
        profile_op(self.id, "close", [], self._close)

    def _close(self):
        try:
            self._send(TERMINATE_MSG)
            self._flush()
        except ProtocolError:
            pass
        finally:
            self._sock.close()
            self._usock.close()
            self._sock = None

    def ping(self):
        """Sends a Sync and waits for ReadyForQuery.  This also brings the
        connection back in step after an error from prepare, describe or close.
        """

        def do_ping():
            self._send(SYNC_MSG)
            while True:
                msg = self._receive_message()
                if isinstance(msg, ReadyForQuery):
                    return
                elif isinstance(msg, ErrorResponse):
                    self._pg_error(msg.fields, resync=True)

        profile_op(self.id, "ping", [], do_ping)

    def prepare_statement(self, query, name="", types=()):
        """Creates the prepared statement ``name`` (the unnamed statement by
        default).  ``types`` optionally gives the type OIDs of the parameters.
        A server error isn't followed by a resync.
        """

        def do_prepare():
            # Byte1('P') - Identifies the message as a Parse command.
            # Int32 -   Message length, including self.
            # String -  Prepared statement name.
            # String -  The query string.
            # Int16 -   Number of parameter data types specified (can be zero).
            # For each parameter:
            #   Int32 - The OID of the parameter data type.
            msg = MessageBuilder(PARSE)
            msg.add_string(name)
            msg.add_string(query)
            msg.add_int16(len(types))
            for oid in types:
                msg.add_uint32(oid)
            self.send_message(msg)
            self.flush_msg()

            while True:
                msg = self._receive_message()
                if isinstance(msg, ParseComplete):
                    return
                elif isinstance(msg, ErrorResponse):
                    self._pg_error(msg.fields)
                elif isinstance(msg, NoticeResponse):
                    pass
                else:
                    raise ProtocolError(f"unknown response from parse: {msg!r}")

        profile_op(self.id, "prepare", ["query", query, "name", name], do_prepare)

    prepare = prepare_statement

    def _execute(self, name, portal, params, rev):
        # Byte1('B') - Identifies the Bind command.
        # Int32 - Message length, including self.
        # String - Name of the destination portal.
        # String - Name of the source prepared statement.
        # Int16 - Number of parameter format codes.
        # Int16 - Number of parameter values.
        # For each parameter value:
        #   Int32 - The length of the parameter value, -1 for NULL.
        #   Byte[n] - Value of the parameter.
        # Int16 - The number of result-column format codes.
        bind = MessageBuilder(BIND)
        bind.add_string(portal)
        bind.add_string(name)
        bind.add_int16(0)  # Send all parameters as text.
        bind.add_int16(len(params))
        for param in params:
            if param is None:
                bind.add_int32(-1)
            else:
                val = _param_bytes(param)
                bind.add_int32(len(val))
                bind.add_string_no_trailing_nul(val)
        bind.add_int16(0)  # Send back all results as text.

        execute = MessageBuilder(EXECUTE)
        execute.add_string(portal)
        execute.add_int32(0)  # no limit on rows

        self.send_message(bind, execute)
        self._send(SYNC_MSG)

        rows = []
        while True:
            msg = self._receive_message()
            if isinstance(msg, ReadyForQuery):
                break
            elif isinstance(msg, DataRow):
                rows.append(list(msg.fields))
            elif isinstance(msg, ErrorResponse):
                self._pg_error(msg.fields, resync=True)
            elif isinstance(
                msg,
                (
                    BindComplete,
                    CommandComplete,
                    EmptyQueryResponse,
                    NoData,
                    NoticeResponse,
                    ParameterStatus,
                ),
            ):
                pass
            else:
                raise ProtocolError(f"unknown response message: {msg!r}")

        if rev:
            rows.reverse()
        return rows

    def execute(self, name="", portal="", params=()):
        """Binds ``params`` to the prepared statement ``name`` and runs it.
        Each parameter is ``str``, ``bytes`` or ``None`` for NULL.  Returns
        the rows in the order the server sent them, each row a list with
        ``None`` for NULL and the raw bytes otherwise.  After a server error
        the connection is brought back in step before the error is raised.
        """

        def do_execute():
            return self._execute(name, portal, params, False)

        return profile_op(
            self.id, "execute", ["name", name, "portal", portal], do_execute
        )

    def execute_rev(self, name="", portal="", params=()):
        """Like ``execute`` but the rows come back last first."""

        def do_execute():
            return self._execute(name, portal, params, True)

        return profile_op(
            self.id, "execute", ["name", name, "portal", portal], do_execute
        )

    def _receive_row_description(self):
        msg = self._receive_message()
        if isinstance(msg, NoData):
            return None
        elif isinstance(msg, RowDescription):
            return _result_descriptions(msg)
        elif isinstance(msg, ErrorResponse):
            self._pg_error(msg.fields)
        else:
            raise ProtocolError(f"unknown response from describe: {msg!r}")

    def _send_describe(self, target, name):
        msg = MessageBuilder(DESCRIBE)
        msg.add_char(target)
        msg.add_string(name)
        self.send_message(msg)
        self.flush_msg()

    def describe_statement(self, name=""):
        """Returns ``(params, results)``: a list of ParamDescription, and a
        list of ResultDescription or ``None`` if the statement returns no
        rows.
        """

        self._send_describe(STATEMENT, name)
        msg = self._receive_message()
        if isinstance(msg, ParameterDescription):
            params = [ParamDescription(oid) for oid in msg.type_oids]
        elif isinstance(msg, ErrorResponse):
            self._pg_error(msg.fields)
        else:
            raise ProtocolError(f"unknown response from describe: {msg!r}")

        return params, self._receive_row_description()

    def describe_portal(self, portal=""):
        self._send_describe(PORTAL, portal)
        return self._receive_row_description()

    def _close_target(self, target, name):
        msg = MessageBuilder(CLOSE)
        msg.add_char(target)
        msg.add_string(name)
        self.send_message(msg)
        self.flush_msg()

        while True:
            msg = self._receive_message()
            if isinstance(msg, CloseComplete):
                return
            elif isinstance(msg, ErrorResponse):
                self._pg_error(msg.fields)
            elif isinstance(msg, NoticeResponse):
                pass
            else:
                raise ProtocolError(f"unknown response from close: {msg!r}")

    def close_statement(self, name=""):
        self._close_target(STATEMENT, name)

    def close_portal(self, portal=""):
        self._close_target(PORTAL, portal)

    def _run_unnamed(self, query, params=()):
        self.prepare_statement(query)
        return self.execute(params=params)

    def begin_work(self):
        self._run_unnamed("begin work")

    def commit(self):
        self._run_unnamed("commit")

    def rollback(self):
        self._run_unnamed("rollback")

    def serial(self, name):
        """The current value of the sequence ``name``."""
        rows = self._run_unnamed("select currval ($1)", [name])
        # currval always returns a bigint, for serial and bigserial alike.
        return decode_value(BIGINT, rows[0][0])

    serial8 = serial

    def serial4(self, name):
        return (self.serial(name) + 2**31) % 2**32 - 2**31
