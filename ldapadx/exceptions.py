"""
Exceptions raised by ldapadx.

Everything derives from :class:`ADXError`.  python-ldap exceptions are turned
into these exactly once, by :func:`translate_ldap_error`, at the point where
:class:`~ldapadx.connection.DirectoryConnection` talks to the server.
"""

import re
from typing import Any

from ldapadx import ldap

from .enums import BindFailure, ResultCode


class ADXError(Exception):
    """
    Base class for all ldapadx errors.

    Args:
        message: human readable description

    Keyword Args:
        code: a result code, where one applies

    """

    def __init__(self, message: str = "", code: int | str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class InvalidInput(ADXError, ValueError):
    """
    The caller passed a malformed filter, DN or parameter.
    """


class SchemaViolation(ADXError):
    """
    A mutation would break what the schema says about an attribute.
    """

    def __init__(self, message: str = "", attribute: str | None = None) -> None:
        super().__init__(message)
        self.attribute = attribute


class ReadOnlyAttribute(SchemaViolation):
    """
    The attribute is constructed by the server and may not be changed.
    """


class AttributeFull(SchemaViolation):
    """
    The attribute is single-valued and already holds a value.
    """


class UnknownAttribute(SchemaViolation):
    """
    Strict schema validation is on and the attribute is not in the schema.
    """


class ConversionFailure(ADXError):
    """
    A value could not be converted between its wire and native forms.
    """


class NotPersisted(ConversionFailure):
    """
    A reference to an entity that has not been stored on the server yet.
    """


class AmbiguousResult(ADXError):
    """
    A filter used to read a single entity matched more than one entry.
    """


class ReferralBudgetExceeded(ADXError):
    """
    The server kept referring us elsewhere past the configured hop limit.
    """


class MalformedReferral(ADXError):
    """
    A referral returned by the server does not contain a usable server URL.
    """


class UnsupportedControl(ADXError):
    """
    The server does not advertise a control this operation needs.
    """


class ServerRejected(ADXError):
    """
    The directory server refused an operation.

    Args:
        message: the server's diagnostic message
        code: the LDAP result code

    Keyword Args:
        server: the URL of the server that refused

    """

    def __init__(
        self, message: str = "", code: int | None = None, server: str | None = None
    ) -> None:
        super().__init__(message, code=code)
        self.server = server

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InsufficientAccess(ServerRejected):
    pass


class AlreadyExists(ServerRejected):
    pass


class UndefinedAttributeType(ServerRejected):
    pass


class InvalidDnSyntax(ServerRejected):
    pass


class NoSuchObject(ServerRejected):
    pass


class ConnectivityFailure(ADXError):
    """
    The server could not be reached or would not let us bind.

    ``retryable`` says whether trying the same thing again later may work.
    """

    retryable: bool = True

    def __init__(
        self,
        message: str = "",
        code: int | str | None = None,
        server: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.server = server
        if retryable is not None:
            self.retryable = retryable


class ServerUnreachable(ConnectivityFailure):
    pass


class InvalidCredentials(ConnectivityFailure):
    """
    The bind was refused.

    When Active Directory says why, :attr:`failure` holds the
    :class:`~ldapadx.enums.BindFailure` and :attr:`reason` a readable version
    of it.
    """

    retryable = False

    def __init__(
        self,
        message: str = "",
        code: int | str | None = None,
        server: str | None = None,
        failure: BindFailure | None = None,
    ) -> None:
        super().__init__(message, code=code, server=server)
        self.failure = failure

    @property
    def reason(self) -> str:
        if self.failure is None:
            return "invalid credentials"
        return self.failure.reason


#: Result codes with their own :class:`ServerRejected` subclass
REJECTIONS: dict[int, type[ServerRejected]] = {
    ResultCode.UNDEFINED_TYPE: UndefinedAttributeType,
    ResultCode.NO_SUCH_OBJECT: NoSuchObject,
    ResultCode.INVALID_DN_SYNTAX: InvalidDnSyntax,
    ResultCode.INSUFFICIENT_ACCESS: InsufficientAccess,
    ResultCode.ALREADY_EXISTS: AlreadyExists,
}

#: Result codes meaning "try again later"
TRANSIENT_CODES: frozenset[int] = frozenset(
    {
        ResultCode.TIME_LIMIT_EXCEEDED,
        ResultCode.BUSY,
        ResultCode.UNAVAILABLE,
    }
)

BIND_FAILURE_RE = re.compile(r"data ([0-9a-f]{3})", re.IGNORECASE)


def _error_details(exc: Exception) -> tuple[int | None, str]:
    """
    Pull the result code and the most useful message out of a python-ldap
    exception.
    """
    details: dict[str, Any] = {}
    if exc.args and isinstance(exc.args[0], dict):
        details = exc.args[0]
    code = details.get("result", getattr(exc, "errnum", None))
    message = details.get("info") or details.get("desc") or str(exc)
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    return code, message


def translate_ldap_error(
    exc: Exception, server: str | None = None, bind: bool = False
) -> ADXError:
    """
    Turn a python-ldap exception into the matching :class:`ADXError`.

    Args:
        exc: the exception python-ldap raised

    Keyword Args:
        server: URL of the server we were talking to
        bind: ``True`` if ``exc`` came from a bind, where access errors mean
            bad credentials rather than missing permissions

    Returns:
        The translated exception, ready to ``raise ... from exc``.

    """
    code, message = _error_details(exc)
    if isinstance(exc, (ldap.SERVER_DOWN, ldap.CONNECT_ERROR)) or code == ResultCode.SERVER_DOWN:
        return ServerUnreachable(message, code=code, server=server)
    if isinstance(exc, ldap.TIMEOUT):
        return ConnectivityFailure(message, code=code, server=server, retryable=True)
    if isinstance(exc, ldap.INVALID_CREDENTIALS) or code in (
        ResultCode.INAPPROPRIATE_AUTH,
        ResultCode.INVALID_CREDENTIALS,
    ) or (bind and code == ResultCode.INSUFFICIENT_ACCESS):
        failure = None
        if match := BIND_FAILURE_RE.search(message):
            try:
                failure = BindFailure(match.group(1).lower())
            except ValueError:
                failure = None
        return InvalidCredentials(message, code=code, server=server, failure=failure)
    if code in TRANSIENT_CODES:
        return ConnectivityFailure(message, code=code, server=server, retryable=True)
    if isinstance(exc, ldap.INVALID_DN_SYNTAX):
        return InvalidDnSyntax(message, code=ResultCode.INVALID_DN_SYNTAX, server=server)
    exc_class = REJECTIONS.get(code, ServerRejected) if code is not None else ServerRejected
    return exc_class(message, code=code, server=server)
