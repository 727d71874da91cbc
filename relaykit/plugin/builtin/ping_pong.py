"""Builtin ping-pong plugin: replies "pong!" to any message containing "ping"."""

from relaykit.core.events import MESSAGE, MessageEvent


class PingPongPlugin:
    id = "ping-pong"
    name = "Ping Pong"
    version = "1.0.0"
    description = "Replies pong! to ping"

    async def install(self, ctx, config=None):
        async def on_message(event: MessageEvent) -> None:
            await event.reply("pong!")

        ctx.on(MESSAGE, on_message, filter=lambda e: "ping" in e.message.text.lower())
        ctx.logger.info("Ping-pong plugin installed")

    async def uninstall(self):
        pass


plugin = PingPongPlugin()
