"""
CRM AD Sync - Synchronize CRM user profile fields from Active Directory.

This package lists enabled CRM users that have a domain account, looks up their
directory properties through the CRM's legacy SOAP user manager service and
patches the CRM user records over the Web API.
"""

__version__ = "1.0.0"
__author__ = "CRM AD Sync Team"
