import asyncio
import signal
import sys

from dotenv import load_dotenv
from loguru import logger
from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from cli_relay.app_config import load_json_config, parse_app_config, resolve_runtime_env
from cli_relay.bootstrap import AppRuntime, bootstrap_runtime


def _make_listener(runtime: AppRuntime):
    async def handle_socket_event(client: SocketModeClient, req: SocketModeRequest) -> None:
        await client.send_socket_mode_response(SocketModeResponse(envelope_id=req.envelope_id))
        if req.type != "events_api":
            return
        event = req.payload.get("event", {})
        if event.get("type") != "message":
            return
        try:
            await runtime.router.handle_message(event)
        except Exception as ex:
            logger.exception(f"Unhandled error routing message {event.get('ts')}: {ex}")

    return handle_socket_event


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    try:
        env = resolve_runtime_env()
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    web_client = AsyncWebClient(token=env.slack_bot_token)
    runtime = await bootstrap_runtime(app, env, web_client=web_client)
    if runtime.log_descriptions:
        logger.info(f"Logging: {', '.join(runtime.log_descriptions)}")

    socket_client = SocketModeClient(app_token=env.slack_app_token, web_client=web_client)
    socket_client.socket_mode_request_listeners.append(_make_listener(runtime))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Starting Socket Mode connection...")
    await socket_client.connect()
    logger.info("cli-relay is running")

    try:
        await stop.wait()
        logger.info("Shutting down...")
    finally:
        killed = runtime.kill_all()
        if killed:
            logger.info(f"Killed {killed} CLI processes")
        await socket_client.close()
        runtime.memory_store.close()
        logger.info("Database closed")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
