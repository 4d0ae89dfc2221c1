"""M365 Security Assessment Platform.

Onboards customer Microsoft 365 tenants with least-privilege app
registrations and collects security assessments using each tenant's
own credentials.
"""

__version__ = "0.1.0"
__author__ = "Security Assessment Team"
