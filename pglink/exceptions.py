class Error(Exception):
    """Generic exception that is the base exception of all other error
    exceptions.
    """

    pass


class InterfaceError(Error):
    """Generic exception raised for errors that are related to the database
    interface rather than the database itself.  For example, if the interface
    attempts to build a message containing an embedded NUL character, or to
    use a closed connection.  The connection remains usable.
    """

    pass


class ProtocolError(InterfaceError):
    """Raised when the byte stream can't be trusted any more: a short read,
    a short message, a backend message that's too long, or a message the
    current protocol state doesn't allow.  The connection should be closed.
    """

    pass


class DataError(Error):
    """Raised when a value can't be converted between its wire text and a
    Python value, or when a type OID has no registered converter.
    """

    pass


class DatabaseError(Error):
    """Raised when the server sends an ErrorResponse.  The first argument is
    the list of ``(code, text)`` pairs in the order the server sent them.
    """

    @property
    def fields(self):
        return self.args[0]

    def _get(self, code):
        for k, v in self.fields:
            if k == code:
                return v
        return None

    @property
    def severity(self):
        return self._get("S")

    @property
    def code(self):
        return self._get("C")

    @property
    def message(self):
        return self._get("M")

    def __str__(self):
        severity, code, message = self.severity, self.code, self.message
        if None in (severity, code, message):
            return "'Always present' field is missing in error message"
        return f"{severity}: {code}: {message}"
