"""
Fetch adapters implementing the authenticated-fetch capability.
"""
