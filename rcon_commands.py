"""
This module provides functions to run the game server's RCON console commands.
"""

from typing import Any, Dict, List, Optional

from rcon_session import CommandOutcome, RconSessionManager

SHUTTING_DOWN_MSG = "Server shutting down"


def sanitize(value: Any) -> str:
    """Strips quotes and backslashes so a value cannot break out of a quoted argument."""
    if value is None:
        return ""
    return str(value).replace('"', "").replace("\\", "")


def server_message(session: RconSessionManager, message: str, skip_log: bool = False):
    """Broadcasts a message to every player in game."""
    return session.execute(f'servermsg "{sanitize(message)}"', skip_log=skip_log)


def save(session: RconSessionManager, skip_log: bool = False):
    """Saves the world."""
    return session.execute("save", skip_log=skip_log)


async def quit_server(session: RconSessionManager, skip_log: bool = False) -> CommandOutcome:
    """
    Saves and shuts the server down.
    The server may drop the socket before answering; that counts as success.
    """
    outcome = await session.execute("quit", skip_log=skip_log, retry=False)
    session.mark_disconnected("quit")
    if not outcome.success and outcome.disconnected:
        return CommandOutcome(True, response=SHUTTING_DOWN_MSG)
    return outcome


def parse_players(response: Optional[str]) -> List[Dict[str, Any]]:
    """Parses 'Players connected (N):' output; each player is a line starting with '-'."""
    found = []
    if not response:
        return found
    for line in response.split("\n"):
        trimmed = line.strip()
        if trimmed.startswith("-"):
            found.append({"name": trimmed[1:].strip(), "online": True})
    return found


async def players(session: RconSessionManager) -> Dict[str, Any]:
    """Retrieves the connected player list."""
    outcome = await session.execute("players", skip_log=True)
    if outcome.success:
        return {"success": True, "players": parse_players(outcome.response)}
    return outcome.to_dict()


def kick_player(session: RconSessionManager, username: str, reason: str = ""):
    """Kicks a player, with an optional reason shown to them."""
    user = sanitize(username)
    why = sanitize(reason)
    if why:
        return session.execute(f'kick "{user}" -r "{why}"')
    return session.execute(f'kick "{user}"')


def ban_player(session: RconSessionManager, username: str, ban_ip: bool = False, reason: str = ""):
    """Bans a player by name, optionally by IP as well."""
    cmd = f'banuser "{sanitize(username)}"'
    if ban_ip:
        cmd += " -ip"
    why = sanitize(reason)
    if why:
        cmd += f' -r "{why}"'
    return session.execute(cmd)


def unban_player(session: RconSessionManager, username: str):
    return session.execute(f'unbanuser "{sanitize(username)}"')


def set_access_level(session: RconSessionManager, username: str, level: str):
    """Sets a player's access level (admin, moderator, overseer, gm, observer, none)."""
    return session.execute(f'setaccesslevel "{sanitize(username)}" "{sanitize(level)}"')


def add_to_whitelist(session: RconSessionManager, username: str):
    return session.execute(f'addusertowhitelist "{sanitize(username)}"')


def remove_from_whitelist(session: RconSessionManager, username: str):
    return session.execute(f'removeuserfromwhitelist "{sanitize(username)}"')


def teleport_player(session: RconSessionManager, player: str, target: Optional[str] = None):
    """Teleports a player to another player."""
    if target:
        return session.execute(f'teleport "{sanitize(player)}" "{sanitize(target)}"')
    return session.execute(f'teleport "{sanitize(player)}"')


def add_item(session: RconSessionManager, item: str, count: int = 1, username: Optional[str] = None):
    """Gives an item to a player (or to the admin running the command when no player is named)."""
    if username:
        return session.execute(f'additem "{sanitize(username)}" "{sanitize(item)}" {int(count)}')
    return session.execute(f'additem "{sanitize(item)}" {int(count)}')


def change_option(session: RconSessionManager, name: str, value: Any):
    """Changes a server option at runtime."""
    return session.execute(f'changeoption {sanitize(name)} "{sanitize(value)}"')


def reload_options(session: RconSessionManager):
    """Reloads server options from disk."""
    return session.execute("reloadoptions")


def check_mods_need_update(session: RconSessionManager):
    """Asks the server whether any workshop mod is out of date."""
    return session.execute("checkModsNeedUpdate")
