"""
Authentication application.

Email-based accounts for dashboard customers and the wallet balance
credited by deposits. API access uses JWT bearer tokens issued by
djangorestframework-simplejwt.

Usage:
    from authentication.models import User
"""
