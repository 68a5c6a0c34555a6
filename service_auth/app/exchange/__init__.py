"""
Token exchange against the tenant's authorization endpoint.
"""
