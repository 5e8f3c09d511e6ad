from dataclasses import dataclass
from dataclasses import field
from types import MappingProxyType

import logging
import re


logger = logging.getLogger(__name__)

MIN_PART_SIZE = 5 * 1024 * 1024
DEFAULT_PART_SIZE = 8 * 1024 * 1024

# Kodo zone index -> S3-compatible region
ZONE_REGIONS = {
    0: "cn-east-1",
    1: "cn-north-1",
    2: "cn-south-1",
    3: "us-north-1",
    4: "ap-southeast-1",
}
ZONE_ALIASES = {"z0": 0, "z1": 1, "z2": 2, "na0": 3, "as0": 4}

_ADMIN_FIELDS = ("admin_access_key", "admin_secret_key", "user_uid", "refresh_url")


@dataclass(frozen=True)
class DriverParameters:
    """Immutable driver configuration, shared read-only by every component."""

    bucket: str
    base_url: str
    access_key: str
    secret_key: str
    root_directory: str = ""
    zone: int = None
    region: str = None
    endpoint_url: str = None
    io_host: str = None
    up_hosts: tuple = ()
    admin_access_key: str = None
    admin_secret_key: str = None
    user_uid: int = None
    refresh_url: str = None
    redirect_map: dict = field(default_factory=dict)
    part_size: int = DEFAULT_PART_SIZE
    connect_timeout: int = 30
    read_timeout: int = 60
    debug: bool = False

    def __post_init__(self):
        for name in ("bucket", "base_url", "access_key", "secret_key"):
            if not getattr(self, name):
                raise ValueError(f"No {name} parameter provided")

        root = (self.root_directory or "").rstrip("/")
        if root:
            if not re.fullmatch(r"[a-zA-Z0-9._/-]*", root):
                raise ValueError(
                    f"rootdirectory contains invalid characters: {root!r}. "
                    "Only alphanumeric characters, dots, hyphens, underscores, "
                    "and slashes are allowed."
                )
            if ".." in root:
                raise ValueError(f"rootdirectory must not contain '..': {root!r}")
        object.__setattr__(self, "root_directory", root)

        if not self.base_url.endswith("/"):
            object.__setattr__(self, "base_url", self.base_url + "/")

        if self.zone is not None and self.zone not in ZONE_REGIONS:
            raise ValueError(f"Unknown zone: {self.zone!r}")

        if self.part_size < MIN_PART_SIZE:
            raise ValueError(
                f"partsize must be at least {MIN_PART_SIZE} bytes, got {self.part_size}"
            )

        given = [name for name in _ADMIN_FIELDS if getattr(self, name)]
        if given and len(given) != len(_ADMIN_FIELDS):
            missing = sorted(set(_ADMIN_FIELDS) - set(given))
            raise ValueError(
                "CDN refresh needs adminaccesskey, adminsecretkey, useruid and "
                f"refreshurl together; missing: {', '.join(missing)}"
            )

        object.__setattr__(self, "up_hosts", tuple(self.up_hosts or ()))
        redirect = {
            host: url if url.endswith("/") else url + "/"
            for host, url in (self.redirect_map or {}).items()
        }
        object.__setattr__(self, "redirect_map", MappingProxyType(redirect))

    @property
    def refresh_enabled(self):
        return self.refresh_url is not None and bool(self.refresh_url)

    @property
    def resolved_region(self):
        if self.region:
            return self.region
        if self.zone is not None:
            return ZONE_REGIONS[self.zone]
        return None

    @property
    def resolved_endpoint_url(self):
        if self.endpoint_url:
            return self.endpoint_url
        if self.zone is not None:
            return f"https://s3.{ZONE_REGIONS[self.zone]}.qiniucs.com"
        return None

    def __repr__(self):
        # keep secrets out of logs
        return (
            f"DriverParameters(bucket={self.bucket!r}, base_url={self.base_url!r}, "
            f"root_directory={self.root_directory!r}, "
            f"region={self.resolved_region!r}, "
            f"endpoint_url={self.resolved_endpoint_url!r}, "
            f"refresh_enabled={self.refresh_enabled})"
        )


def _get(parameters, key):
    value = parameters.get(key)
    if value is None:
        return None
    value = str(value)
    return value or None


def _parse_zone(value):
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    value = str(value).strip()
    if value in ZONE_ALIASES:
        return ZONE_ALIASES[value]
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"zone format err: {value!r}") from None


def _parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_redirect(value):
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items()}
    redirect = {}
    for item in value:
        hostval = str(item).split("::")
        if len(hostval) == 2:
            redirect[hostval[0]] = hostval[1]
        else:
            logger.warning("Ignoring malformed redirect entry %r", item)
    return redirect


def from_parameters(parameters):
    """Build DriverParameters from a registry driver parameter mapping."""
    kwargs = {
        "bucket": _get(parameters, "bucket"),
        "base_url": _get(parameters, "baseurl"),
        "access_key": _get(parameters, "accesskey"),
        "secret_key": _get(parameters, "secretkey"),
        "root_directory": _get(parameters, "rootdirectory") or "",
        "zone": _parse_zone(parameters.get("zone")),
        "region": _get(parameters, "region"),
        "endpoint_url": _get(parameters, "endpoint"),
        "io_host": _get(parameters, "iohost"),
        "up_hosts": tuple(str(h) for h in parameters.get("uphosts") or ()),
        "admin_access_key": _get(parameters, "adminaccesskey"),
        "admin_secret_key": _get(parameters, "adminsecretkey"),
        "refresh_url": _get(parameters, "refreshurl"),
        "redirect_map": _parse_redirect(parameters.get("redirect")),
        "debug": _parse_bool(parameters.get("debug", False)),
    }

    user_uid = _get(parameters, "useruid")
    if user_uid is not None:
        try:
            kwargs["user_uid"] = int(user_uid)
        except ValueError:
            raise ValueError(f"useruid format err: {user_uid!r}") from None
        if kwargs["user_uid"] < 0:
            raise ValueError(f"useruid format err: {user_uid!r}")

    part_size = parameters.get("partsize")
    if part_size is not None:
        kwargs["part_size"] = int(part_size)

    params = DriverParameters(**kwargs)
    logger.info("kodo.config %r", params)
    return params
