# Every module in ldapadx imports python-ldap through here so that tests
# have a single place to patch ``ldap.initialize``.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
