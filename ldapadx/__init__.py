"""
Schema-aware Active Directory access on top of python-ldap.
"""

__version__ = "0.1.0"
