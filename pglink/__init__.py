from pglink.converters import (
    PG_TYPES,
    TypeCodec,
    decode_value,
    encode_value,
    name_of_type,
    register_type,
)
from pglink.core import (
    CoreConnection,
    ParamDescription,
    ResultDescription,
    md5_password,
)
from pglink.exceptions import (
    DatabaseError,
    DataError,
    Error,
    InterfaceError,
    ProtocolError,
)
from pglink.native import Connection, PreparedStatement

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

__version__ = "0.1.0"


def connect(
    user=None,
    host=None,
    port=None,
    password=None,
    database=None,
    **kwargs,
):
    """Opens a ``Connection``.  See ``CoreConnection`` for the arguments."""

    return Connection(
        user=user,
        host=host,
        port=port,
        password=password,
        database=database,
        **kwargs,
    )


__all__ = [
    "Connection",
    "CoreConnection",
    "DataError",
    "DatabaseError",
    "Error",
    "InterfaceError",
    "PG_TYPES",
    "ParamDescription",
    "PreparedStatement",
    "ProtocolError",
    "ResultDescription",
    "TypeCodec",
    "connect",
    "decode_value",
    "encode_value",
    "md5_password",
    "name_of_type",
    "register_type",
]
