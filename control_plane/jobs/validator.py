"""Per-type required-field checks for job payloads.

Unknown job types validate with zero required fields so new types can be
dispatched before they are added here. Only presence is checked; values are
the concern of whoever builds the payload.
"""

from typing import Any

_VOICE_NODE_INSTALL = ("node_id", "install_dir", "service_name")
_INSTANCE_ACTION = ("instance_id", "action")
_SERVICE_ACTION = ("action",)

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    # Voice and bot nodes
    "ts3.install": _VOICE_NODE_INSTALL,
    "ts6.install": _VOICE_NODE_INSTALL,
    "sinusbot.install": _VOICE_NODE_INSTALL,
    "ts3.instance.create": ("instance_id", "voice_port", "query_port", "file_port", "db_mode"),
    "ts6.instance.create": ("instance_id", "name"),
    "sinusbot.instance.create": ("instance_id", "data_dir"),
    "ts3.instance.action": _INSTANCE_ACTION,
    "ts6.instance.action": _INSTANCE_ACTION,
    "sinusbot.instance.action": _INSTANCE_ACTION,
    "ts3.service.action": _SERVICE_ACTION,
    "ts6.service.action": _SERVICE_ACTION,
    "sinusbot.service.action": _SERVICE_ACTION,
    # Virtual servers
    "ts3.virtual.create": ("virtual_server_id", "name"),
    "ts6.virtual.create": ("virtual_server_id", "name"),
    "ts3.virtual.action": ("virtual_server_id", "action"),
    "ts6.virtual.action": ("virtual_server_id", "action"),
    "ts3.virtual.token.rotate": ("virtual_server_id",),
    "ts6.virtual.token.rotate": ("virtual_server_id",),
    "ts3.viewer.snapshot": ("virtual_server_id", "cache_key"),
    "ts6.viewer.snapshot": ("virtual_server_id", "cache_key"),
    # Credentials
    "admin.ssh_key.store": ("user_id", "authorized_keys_path", "public_key"),
    # Reconciliation
    "firewall.open_ports": ("agent_id", "ports"),
    "firewall.close_ports": ("agent_id", "ports"),
    "instance.start": ("instance_id", "agent_id"),
    "instance.stop": ("instance_id", "agent_id"),
    "instance.restart": ("instance_id", "agent_id"),
    "instance.disk.scan": ("instance_id", "agent_id"),
    "node.disk.stat": ("node_id", "agent_id"),
    "server.status.check": ("server_id", "ip", "port", "query_type"),
    "instance.query.check": ("instance_id", "agent_id", "query_type"),
}


class JobValidationError(ValueError):
    """Raised when a payload is missing required fields for its job type."""

    def __init__(self, job_type: str, errors: list[str]):
        self.job_type = job_type
        self.errors = errors
        super().__init__(" ".join(errors))


def _is_missing(payload: dict[str, Any], field_name: str) -> bool:
    value = payload.get(field_name)
    return value is None or value == ""


def validate(job_type: str, payload: dict[str, Any]) -> list[str]:
    """Return one error string per missing required field (empty when valid)."""
    return [
        f"Missing required field: {field_name}"
        for field_name in REQUIRED_FIELDS.get(job_type, ())
        if _is_missing(payload, field_name)
    ]


def validate_or_raise(job_type: str, payload: dict[str, Any]) -> None:
    errors = validate(job_type, payload)
    if errors:
        raise JobValidationError(job_type, errors)
