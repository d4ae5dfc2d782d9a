"""
Constants used throughout the iloader package.

This module contains endpoint URLs, protocol identifiers, default values
and magic numbers used by the authentication, developer services and
signing components. Import from here rather than hardcoding values
elsewhere.
"""

from pathlib import Path

# Version info
VERSION = "0.1.0"
APP_NAME = "iloader"

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".iloader"
DEFAULT_OUTPUT_DIR = DEFAULT_CONFIG_DIR / "signed"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"
DEFAULT_ACCOUNTS_FILE = "accounts.json"

# Anisette
DEFAULT_ANISETTE_SERVER = "ani.sidestore.io"
ANISETTE_TIMEOUT = 15  # seconds
ANISETTE_CACHE_TTL = 300  # seconds
ANISETTE_ENDPOINTS = ["", "/headers", "/anisette"]

# Grand Slam Authentication
GSA_URL = "https://gsa.apple.com/grandslam/GsService2"
GSA_TIMEOUT = 30  # seconds
GSA_PROTOCOL_VERSION = "1.0.1"
GSA_USER_AGENT = "akd/1.0 CFNetwork/1494 Darwin/23.4.0"
GSA_ACCEPT_LANGUAGE = "en_US"
GSA_CONTENT_TYPE = "application/x-www-form-urlencoded"
GSA_SECOND_FACTOR_STATES = ("trustedDeviceSecondaryAuth", "secondaryAuth")
GSA_ERROR_INVALID_CREDENTIALS = -20101
GSA_SRP_PROTOCOLS = ["s2k", "s2k_fo"]
SRP_PRIVATE_KEY_BYTES = 256

# Developer services
DEVELOPER_SERVICES_URL = "https://developerservices2.apple.com/services"
DEVELOPER_PROTOCOL_VERSION = "QH65B2"
DEVELOPER_CLIENT_ID = "XABBG36SBA"
DEVELOPER_TIMEOUT = 30  # seconds
DEVELOPER_USER_AGENT = "Xcode"
DEVELOPER_PLATFORM_IOS = "ios"
DEFAULT_MACHINE_NAME = "iloader"

# Keyring service name for session tokens and signing keys
KEYRING_SERVICE = "iloader"

# Bundle layout
PAYLOAD_DIR = "Payload"
CODE_SIGNATURE_DIR = "_CodeSignature"
CODE_RESOURCES_FILE = "CodeResources"
EMBEDDED_PROFILE = "embedded.mobileprovision"
INFO_PLIST = "Info.plist"
FRAMEWORKS_DIR = "Frameworks"
PLUGINS_DIR = "PlugIns"

# Code signing
CODE_SIGN_PAGE_SIZE = 4096
CODE_SIGN_PAGE_SHIFT = 12
CODE_SIGN_ALIGN = 16
CMS_RESERVED_SIZE = 9000  # bytes reserved for the CMS blob
LINKEDIT_PAGE_ALIGN = 0x4000

# Release IPAs for the built-in installers
SIDESTORE_IPA_URL = "https://github.com/SideStore/SideStore/releases/latest/download/SideStore.ipa"
LIVECONTAINER_IPA_URL = (
    "https://github.com/LiveContainer/LiveContainer/releases/latest/download/LiveContainer.ipa"
)
DOWNLOAD_TIMEOUT = 60  # seconds
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
