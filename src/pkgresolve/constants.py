import platform
from os import getenv
from pathlib import Path

# directories are created by their owners (RepositoryCache), not at import time
DATA_DIR = Path(getenv("PKGRESOLVE_DATA_DIR", "data")).resolve()
CACHE_DIR = Path(getenv("PKGRESOLVE_CACHE_DIR", str(DATA_DIR / "cache"))).resolve()

# where distribution-shipped public keys live
KEYS_DIR = Path(getenv("PKGRESOLVE_KEYS_DIR", "/etc/pki/rpm-gpg"))

# seconds before cached metadata is considered stale, -1 for never
METADATA_EXPIRE = int(getenv("PKGRESOLVE_METADATA_EXPIRE", "172800"))

NATIVE_ARCH = getenv("PKGRESOLVE_ARCH", platform.machine() or "x86_64")

# file names inside a repository's repodata/ directory
REPOMD_FILE = "repomd"
SIGNATURE_SUFFIX = ".asc"
PRIMARY_FILE = "primary"
MODULES_FILE = "modules"
UPDATEINFO_FILE = "updateinfo"
CACHE_STAMP_FILE = "cache.json"
SOLV_CACHE_FILE = "solv.json"

# fmt: off
# architectures each machine can install, most preferred first
ARCH_COMPAT = {
    "x86_64": ("x86_64", "i686", "i586", "i486", "i386", "noarch"),
    "i686": ("i686", "i586", "i486", "i386", "noarch"),
    "aarch64": ("aarch64", "noarch"),
    "armv7hl": ("armv7hl", "noarch"),
    "ppc64le": ("ppc64le", "noarch"),
    "s390x": ("s390x", "noarch"),
    "riscv64": ("riscv64", "noarch"),
    "loongarch64": ("loongarch64", "noarch"),
}
# fmt: on


def compatible_arches(arch: str = NATIVE_ARCH) -> tuple[str, ...]:
    """Installable architectures for ``arch``, most preferred first."""
    return ARCH_COMPAT.get(arch, (arch, "noarch"))
