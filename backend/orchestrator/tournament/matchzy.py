"""
MatchZy command builders.

Plain RCON command strings for configuring the MatchZy plugin on a game
server. Nothing here talks to a server; see dispatcher.py.
"""

from typing import Dict, List, Mapping, Optional

WEBHOOK_HEADER = "X-MatchZy-Token"

# Per-server overrides an administrator may set (convar -> value)
SERVER_CONVARS = frozenset(
    {
        "matchzy_chat_prefix",
        "matchzy_admin_chat_prefix",
        "matchzy_knife_enabled_default",
        "matchzy_minimum_ready_required",
        "matchzy_pause_after_restore",
        "matchzy_stop_command_available",
        "matchzy_stop_command_no_damage",
        "matchzy_whitelist_enabled_default",
        "matchzy_kick_when_no_match_loaded",
        "matchzy_playout_enabled_default",
        "matchzy_reset_cvars_on_series_end",
        "matchzy_use_pause_command_for_tactical_pause",
        "matchzy_autostart_mode",
        "matchzy_demo_path",
        "matchzy_demo_name_format",
    }
)


def quote(value: str) -> str:
    """Quote a command argument; quotes and separators cannot break out."""
    cleaned = str(value).replace('"', "").replace(";", "").replace("\n", " ")
    return f'"{cleaned}"'


def _flag(value: bool) -> str:
    return "1" if value else "0"


def webhook_commands(base_url: str, token: str, match_slug: Optional[str] = None) -> List[str]:
    """Event webhook destination (idempotent, safe to repeat)."""
    url = f"{base_url}/api/events/{match_slug}" if match_slug else f"{base_url}/api/events"
    return [
        f"matchzy_remote_log_url {quote(url)}",
        f"matchzy_remote_log_header_key {quote(WEBHOOK_HEADER)}",
        f"matchzy_remote_log_header_value {quote(token)}",
        "get5_check_auths true",
    ]


def load_auth_commands(token: str) -> List[str]:
    """Header the server sends when fetching the match config."""
    return [
        f"matchzy_loadmatch_url_header_key {quote('Authorization')}",
        f"matchzy_loadmatch_url_header_value {quote(f'Bearer {token}')}",
    ]


def report_upload_commands(base_url: str, token: str, server_id: str) -> List[str]:
    return [
        f"matchzy_report_endpoint {quote(f'{base_url}/api/events/report')}",
        f"matchzy_report_server_id {quote(server_id)}",
        f"matchzy_report_token {quote(token)}",
    ]


def demo_upload_commands(base_url: str, match_slug: str, token: str) -> List[str]:
    return [
        f"matchzy_demo_upload_url {quote(f'{base_url}/api/demos/{match_slug}/upload')}",
        f"matchzy_demo_upload_header_key {quote(WEBHOOK_HEADER)}",
        f"matchzy_demo_upload_header_value {quote(token)}",
    ]


def server_config_commands(
    chat_prefix: Optional[str] = None,
    knife_enabled_default: Optional[bool] = None,
    minimum_ready_required: Optional[int] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """Core plugin settings plus per-server overrides (unknown convars are dropped)."""
    values: Dict[str, str] = {}
    if chat_prefix is not None:
        values["matchzy_chat_prefix"] = quote(chat_prefix)
    if knife_enabled_default is not None:
        values["matchzy_knife_enabled_default"] = _flag(knife_enabled_default)
    if minimum_ready_required is not None:
        values["matchzy_minimum_ready_required"] = str(int(minimum_ready_required))

    for name, value in (overrides or {}).items():
        if name not in SERVER_CONVARS:
            continue
        if isinstance(value, bool):
            values[name] = _flag(value)
        elif isinstance(value, int) or str(value).isdigit():
            values[name] = str(value)
        else:
            values[name] = quote(value)

    return [f"{name} {value}" for name, value in values.items()]


def disable_webhook_commands() -> List[str]:
    return [
        'matchzy_remote_log_url ""',
        'matchzy_remote_log_header_key ""',
        'matchzy_remote_log_header_value ""',
    ]


def load_match_command(base_url: str, match_slug: str) -> str:
    return f"matchzy_loadmatch_url {quote(f'{base_url}/api/matches/{match_slug}.json')}"


def end_match_command() -> str:
    return "css_restart"


def say_command(message: str) -> str:
    return f"say {quote(message)}"


def changelevel_command(map_name: str) -> str:
    return f"changelevel {quote(map_name)[1:-1].replace(' ', '')}"


STATUS_CONVARS = (
    "matchzy_tournament_status",
    "matchzy_tournament_match",
    "matchzy_tournament_updated",
)
