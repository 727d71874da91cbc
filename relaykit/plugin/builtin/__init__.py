"""Plugins shipped with relaykit."""

from relaykit.plugin.builtin import ping_pong
from relaykit.plugin.loader import PluginSpec


def builtin_specs() -> list[PluginSpec]:
    return [
        PluginSpec(
            id=ping_pong.plugin.id,
            module="relaykit.plugin.builtin.ping_pong",
            load=lambda: ping_pong.PingPongPlugin(),
        )
    ]
