"""
Main entry point for the cellular telemetry agent.

This module is responsible for:
- Parsing the command line and the YAML configuration.
- Creating the MQTT session and bringing it up.
- Announcing the device identity and registering the startup subscriptions.
- Driving the session's maintenance tick and the telemetry loop on fixed cadences.
- Managing the overall application lifecycle (start, signal-driven stop).

Session calls are blocking, so they run through `asyncio.to_thread`; the
session itself serializes them.
"""

import argparse
import asyncio
import logging
import signal
import time

from typing import Any, Dict, List, Optional

from cell_telemetry.agent.config_loader import load_config
from cell_telemetry.agent.models import (DEFAULT_PORT, AgentStatus, DeviceIdentityPayload, SessionOptions,
                                         SessionStatus, TelemetryPayload)
from cell_telemetry.agent.mqtt import MQTTSession

DEFAULT_TICK_INTERVAL = 10

def setup_logging(level: int = logging.INFO):
    """
    Configures the global logging settings for the entire application.
    This should be called as early as possible during startup.
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)-8s] %(name)s.%(funcName)s: %(message)s'
    )

logger = logging.getLogger(__name__)

def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cellular telemetry agent: keeps an MQTT session alive "
                                                 "and publishes device telemetry.")
    parser.add_argument("-c", "--config", default="config.yaml",
                        help="Path to the YAML configuration file (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser

async def bring_up(session: MQTTSession, config: Dict[str, Any]) -> SessionStatus:
    """
    Initializes the session, then announces the device and subscribes to the
    configured topics. On failure the maintenance loop keeps retrying the link.
    """
    mqtt_conf = config.get('mqtt', {}) or {}
    agent_conf = config.get('agent', {}) or {}

    status = await asyncio.to_thread(session.initialize,
                                     mqtt_conf.get('host', 'localhost'),
                                     mqtt_conf.get('client_id', 'cell-telemetry'),
                                     mqtt_conf.get('username'),
                                     mqtt_conf.get('password'),
                                     int(mqtt_conf.get('port', DEFAULT_PORT)))
    if status != SessionStatus.OK:
        logger.error(f"MQTT initialization failed: {status.name}")
        return status

    announce_topic: Optional[str] = agent_conf.get('announce_topic')
    if announce_topic:
        payload = DeviceIdentityPayload(client_id=session.target.client_id)
        result = await asyncio.to_thread(session.publish, announce_topic, payload.to_json())
        logger.info(f"Announced device '{session.target.client_id}' on '{announce_topic}': {result.name}")

    topics: List[str] = agent_conf.get('subscriptions', []) or []
    for topic in topics:
        result = await asyncio.to_thread(session.subscribe, topic)
        if result != SessionStatus.OK:
            logger.warning(f"Startup subscription to '{topic}' failed: {result.name}")
    return status

async def maintenance_loop(session: MQTTSession, interval: float):
    """Calls `session.tick()` forever, once per `interval` seconds."""
    logger.info(f"Maintenance loop started (every {interval}s).")
    try:
        while True:
            await asyncio.to_thread(session.tick)
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("Maintenance loop stopped.")

async def telemetry_loop(session: MQTTSession, topic: str, interval: float):
    """Background task for sending agent health metrics."""
    logger.info("Telemetry loop started.")
    start_time = time.time()

    try:
        while True:
            payload = TelemetryPayload(
                client_id=session.target.client_id if session.target else "",
                status=AgentStatus.RUNNING,
                uptime=time.time() - start_time,
                connected=session.connected
            )
            result = await asyncio.to_thread(session.publish, topic, payload.to_json())
            if result != SessionStatus.OK:
                logger.warning(f"Telemetry publish failed: {result.name}")
            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info("Telemetry loop stopped.")

async def shutdown(signal_name: str, session: MQTTSession, tasks: List[asyncio.Task], stop_event: asyncio.Event):
    """Graceful shutdown handler."""
    logger.info(f"Received exit signal {signal_name}...")

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    await asyncio.to_thread(session.close)
    stop_event.set()

async def main_application_runner(argv: Optional[List[str]] = None):
    args = build_argument_parser().parse_args(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger.info("Starting cellular telemetry agent...")

    config: Dict[str, Any] = load_config(args.config)
    agent_conf = config.get('agent', {}) or {}

    session = MQTTSession(options=SessionOptions.from_config(config))
    await bring_up(session, config)

    tasks = [asyncio.create_task(maintenance_loop(session, float(agent_conf.get('tick_interval', DEFAULT_TICK_INTERVAL))))]
    telemetry_interval = float(agent_conf.get('telemetry_interval', 0))
    telemetry_topic = agent_conf.get('telemetry_topic')
    if telemetry_topic and telemetry_interval > 0:
        tasks.append(asyncio.create_task(telemetry_loop(session, telemetry_topic, telemetry_interval)))

    # Setup Signal Handlers for OS interrupts
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown(s.name, session, tasks, stop_event))
        )

    logger.info("Agent is fully operational. Press Ctrl+C to exit.")
    try:
        await stop_event.wait()
    finally:
        for task in tasks:
            task.cancel()

def run():
    try:
        asyncio.run(main_application_runner())
    except KeyboardInterrupt:
        # Handled by the signal handler, but good to catch here just in case.
        pass

if __name__ == "__main__":
    run()
