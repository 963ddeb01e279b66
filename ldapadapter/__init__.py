"""
A paginated query layer on top of python-ldap.
"""

__version__ = "1.0.0"
