"""
Directory constants: attribute syntaxes, lookup operations, control OIDs and
result codes as used by Active Directory.
"""

from enum import Enum, IntEnum, IntFlag

from ldapadx import ldap


class Syntax(str, Enum):
    """
    ``attributeSyntax`` OIDs of the Active Directory schema.
    """

    DN_REFERENCE = "2.5.5.1"
    OBJECT_IDENTIFIER = "2.5.5.2"
    CASE_EXACT_STRING = "2.5.5.3"
    TELETEX_STRING = "2.5.5.4"
    PRINTABLE_STRING = "2.5.5.5"
    NUMERIC_STRING = "2.5.5.6"
    DN_BINARY = "2.5.5.7"
    BOOLEAN = "2.5.5.8"
    INTEGER = "2.5.5.9"
    BINARY = "2.5.5.10"
    TIME = "2.5.5.11"
    UNICODE_STRING = "2.5.5.12"
    PRESENTATION_ADDRESS = "2.5.5.13"
    DN_STRING = "2.5.5.14"
    SECURITY_DESCRIPTOR = "2.5.5.15"
    LARGE_INTEGER = "2.5.5.16"
    SID = "2.5.5.17"

    @classmethod
    def lookup(cls, value: str | None) -> "Syntax | None":
        """
        Return the member for ``value``, or ``None`` for a missing or
        unrecognized OID.
        """
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


class Operation(Enum):
    """
    The three lookup kinds a :class:`~ldapadx.tasks.SearchTask` can run.
    """

    #: Whole subtree below the base
    SEARCH = "search"
    #: Immediate children of the base
    LIST = "list"
    #: The base entry only
    READ = "read"

    @property
    def scope(self) -> int:
        return {
            Operation.SEARCH: ldap.SCOPE_SUBTREE,
            Operation.LIST: ldap.SCOPE_ONELEVEL,
            Operation.READ: ldap.SCOPE_BASE,
        }[self]


class Control(str, Enum):
    """
    Server control OIDs used by this package.
    """

    PAGED_RESULTS = "1.2.840.113556.1.4.319"
    SHOW_DELETED = "1.2.840.113556.1.4.417"
    SERVER_SORT = "1.2.840.113556.1.4.473"


class ResultCode(IntEnum):
    """
    LDAP result codes the error translation cares about.
    """

    OPERATIONS_ERROR = 1
    TIME_LIMIT_EXCEEDED = 3
    SIZE_LIMIT_EXCEEDED = 4
    REFERRAL = 10
    UNDEFINED_TYPE = 17
    NO_SUCH_OBJECT = 32
    INVALID_DN_SYNTAX = 34
    INAPPROPRIATE_AUTH = 48
    INVALID_CREDENTIALS = 49
    INSUFFICIENT_ACCESS = 50
    BUSY = 51
    UNAVAILABLE = 52
    ALREADY_EXISTS = 68
    SERVER_DOWN = -1


class BindFailure(str, Enum):
    """
    The ``data XXX`` sub-codes Active Directory appends to a failed bind.
    """

    USER_NOT_FOUND = "525"
    BAD_PASSWORD = "52e"
    LOGON_HOURS = "530"
    WORKSTATION = "531"
    PASSWORD_EXPIRED = "532"
    ACCOUNT_DISABLED = "533"
    ACCOUNT_EXPIRED = "701"
    MUST_RESET_PASSWORD = "773"
    ACCOUNT_LOCKED = "775"

    @property
    def reason(self) -> str:
        return {
            BindFailure.USER_NOT_FOUND: "user not found",
            BindFailure.BAD_PASSWORD: "invalid credentials",
            BindFailure.LOGON_HOURS: "not permitted to logon at this time",
            BindFailure.WORKSTATION: "not permitted to logon at this workstation",
            BindFailure.PASSWORD_EXPIRED: "password expired",
            BindFailure.ACCOUNT_DISABLED: "account disabled",
            BindFailure.ACCOUNT_EXPIRED: "account expired",
            BindFailure.MUST_RESET_PASSWORD: "user must reset password",
            BindFailure.ACCOUNT_LOCKED: "user account locked",
        }[self]


class SystemFlags(IntEnum):
    """
    Bits of the ``systemFlags`` attribute on schema entries.
    """

    NOT_REPLICATED = 1
    PARTIAL_SET_MEMBER = 2
    CONSTRUCTED = 4


class UserAccountControl(IntFlag):
    """
    Bits of the ``userAccountControl`` attribute of user and computer
    accounts, for use with :meth:`~ldapadx.entities.Entity.bit_state`.
    """

    SCRIPT = 0x1
    ACCOUNTDISABLE = 0x2
    HOMEDIR_REQUIRED = 0x8
    LOCKOUT = 0x10
    PASSWD_NOTREQD = 0x20
    #: Read-only: computed from the ACL on the object
    PASSWD_CANT_CHANGE = 0x40
    ENCRYPTED_TEXT_PWD_ALLOWED = 0x80
    TEMP_DUPLICATE_ACCOUNT = 0x100
    NORMAL_ACCOUNT = 0x200
    INTERDOMAIN_TRUST_ACCOUNT = 0x800
    WORKSTATION_TRUST_ACCOUNT = 0x1000
    SERVER_TRUST_ACCOUNT = 0x2000
    DONT_EXPIRE_PASSWORD = 0x10000
    MNS_LOGON_ACCOUNT = 0x20000
    SMARTCARD_REQUIRED = 0x40000
    TRUSTED_FOR_DELEGATION = 0x80000
    NOT_DELEGATED = 0x100000
    USE_DES_KEY_ONLY = 0x200000
    DONT_REQ_PREAUTH = 0x400000
    PASSWORD_EXPIRED = 0x800000
    TRUSTED_TO_AUTH_FOR_DELEGATION = 0x1000000
    PARTIAL_SECRETS_ACCOUNT = 0x4000000


class TaskState(Enum):
    """
    Where a :class:`~ldapadx.tasks.SearchTask` is in its life.
    """

    CONFIGURED = "configured"
    RUNNING = "running"
    #: A page arrived and the server has more
    PAGE_READY = "page-ready"
    #: The last page arrived
    COMPLETE = "complete"
    #: We were referred to another server and are about to ask it
    REFERRAL_FOLLOWED = "referral-followed"
    #: The lookup raised, or we gave up following referrals
    FAILED = "failed"
