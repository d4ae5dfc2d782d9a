"""
Apple developer services.

Example:
    from iloader.core.developer import DeveloperServicesClient, ServiceContext

    client = DeveloperServicesClient(anisette)
    teams = client.list_teams(ServiceContext(account, "ani.sidestore.io"))
"""

from iloader.core.developer.client import DeveloperServicesClient
from iloader.core.developer.models import (
    AppId,
    AppIdList,
    Certificate,
    CertificateRequest,
    Device,
    ProvisioningProfile,
    ServiceContext,
    Team,
)

__all__ = [
    "AppId",
    "AppIdList",
    "Certificate",
    "CertificateRequest",
    "DeveloperServicesClient",
    "Device",
    "ProvisioningProfile",
    "ServiceContext",
    "Team",
]
