from itertools import count

from pglink.converters import decode_value, encode_value
from pglink.core import CoreConnection
from pglink.exceptions import DatabaseError, InterfaceError

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


def make_params(param_descriptions, args):
    if len(args) != len(param_descriptions):
        raise InterfaceError(
            f"The statement takes {len(param_descriptions)} parameters, but "
            f"{len(args)} were given."
        )
    return [encode_value(p.param_type, a) for p, a in zip(param_descriptions, args)]


def make_rows(columns, rows):
    if columns is None:
        return rows
    return [
        [decode_value(c.field_type, v) for c, v in zip(columns, row)] for row in rows
    ]


class Connection(CoreConnection):
    """A connection that converts between Python values and the wire text,
    using the types the server reports for each statement.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._columns = None
        self._statement_nums = count()

    @property
    def columns(self):
        """The ResultDescription list of the last statement run, or ``None``
        if it didn't return rows.
        """
        return self._columns

    def run(self, sql, *args):
        try:
            self.prepare_statement(sql)
            params, self._columns = self.describe_statement()
        except DatabaseError:
            # The server ignores everything until it sees a Sync.
            self.ping()
            raise
        rows = self.execute(params=make_params(params, args))
        return make_rows(self._columns, rows)

    def prepare(self, sql, name=None):
        if name is None:
            name = f"pglink_statement_{next(self._statement_nums)}"
        return PreparedStatement(self, sql, name)


class PreparedStatement:
    def __init__(self, con, sql, name):
        self.con = con
        self.name = name
        try:
            con.prepare_statement(sql, name=name)
            self.params, self.columns = con.describe_statement(name)
        except DatabaseError:
            con.ping()
            raise

    def run(self, *args):
        rows = self.con.execute(name=self.name, params=make_params(self.params, args))
        return make_rows(self.columns, rows)

    def close(self):
        try:
            self.con.close_statement(self.name)
        except DatabaseError:
            self.con.ping()
            raise


__all__ = ["Connection", "PreparedStatement"]
