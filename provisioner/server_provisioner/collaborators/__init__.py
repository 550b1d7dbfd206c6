"""Concrete collaborators the recipe steps drive: packages, Wine, delivery, systemd, ufw."""
from .compat import WineCompatLayer
from .delivery import (ArchiveDelivery, DirectoryCopyDelivery, FileDelivery, SteamCmdDelivery,
                       make_delivery)
from .firewall import UfwFirewall
from .packages import AptPackageManager, DnfPackageManager, PackageManager, detect_package_manager
from .service import ServiceSpec, SystemdServiceManager

__all__ = [
    "WineCompatLayer",
    "FileDelivery", "ArchiveDelivery", "DirectoryCopyDelivery", "SteamCmdDelivery", "make_delivery",
    "UfwFirewall",
    "PackageManager", "AptPackageManager", "DnfPackageManager", "detect_package_manager",
    "ServiceSpec", "SystemdServiceManager",
]
