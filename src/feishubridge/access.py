"""Sender and chat gating applied before a message reaches the agent.

Direct chats follow ``dm_policy``: ``open`` admits everyone, while
``allowlist`` and ``pairing`` admit only senders listed in ``allow_from``.
The bridge keeps no pairing store, so unknown senders under ``pairing`` are
dropped like any other unlisted sender.

Group chats follow ``group_policy``:

    disabled   no group message is handled
    open       any chat; a per-group ``allow_from`` narrows the senders
    allowlist  the chat must have a ``groups`` entry (or ``"*"``), or the
               sender must be in ``group_allow_from``

A per-group ``enabled: false`` always drops the chat, and a per-group
``require_mention`` overrides the channel-wide setting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from feishubridge.utils.config import WILDCARD, FeishuConfig


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str = ""
    require_mention: bool = False


def sender_allowed(allow_from: Iterable[str], sender_id: str) -> bool:
    entries = set(allow_from)
    return WILDCARD in entries or (bool(sender_id) and sender_id in entries)


def _check_direct(config: FeishuConfig, sender_id: str) -> AccessDecision:
    if config.dm_policy == "open" or sender_allowed(config.allow_from, sender_id):
        return AccessDecision(True)
    return AccessDecision(
        False, f"sender {sender_id or 'unknown'} not allowed (dm_policy={config.dm_policy})"
    )


def _check_group(config: FeishuConfig, chat_id: str, sender_id: str) -> AccessDecision:
    if config.group_policy == "disabled":
        return AccessDecision(False, "group messages are disabled")

    group = config.group_config(chat_id)
    if group is not None and group.enabled is False:
        return AccessDecision(False, f"group {chat_id} is disabled")

    if group is not None and group.allow_from is not None:
        senders = group.allow_from
    elif config.group_policy == "allowlist":
        senders = config.group_allow_from if group is None else [WILDCARD]
    else:
        senders = [WILDCARD]

    if not sender_allowed(senders, sender_id):
        return AccessDecision(
            False,
            f"sender {sender_id or 'unknown'} not allowed in group {chat_id} "
            f"(group_policy={config.group_policy})",
        )

    require_mention = config.require_mention
    if group is not None and group.require_mention is not None:
        require_mention = group.require_mention
    return AccessDecision(True, require_mention=require_mention)


def check_access(
    config: FeishuConfig, *, chat_type: str, chat_id: str, sender_id: str
) -> AccessDecision:
    """Decide whether a message may be handled, and whether it needs a mention."""
    if chat_type == "group":
        return _check_group(config, chat_id, sender_id)
    return _check_direct(config, sender_id)
