"""Entry point for syncfeed: python -m syncfeed"""

import asyncio
import logging
import uuid

from langchain_core.messages import HumanMessage

from syncfeed.agent import create_agent
from syncfeed.config import load_config
from syncfeed.engine import SyncEngine
from syncfeed.poller import start_polling
from syncfeed.store import Store
from syncfeed.tools import set_engine
from syncfeed.watcher import ChangeWatcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
# Quiet noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("langchain").setLevel(logging.WARNING)
logging.getLogger("watchdog").setLevel(logging.WARNING)

logger = logging.getLogger("syncfeed")


async def chat_loop(agent, config: dict) -> None:
    """Run the interactive chat loop."""
    print("syncfeed ready! Type your message (Ctrl+C to quit).\n")

    while True:
        try:
            user_input = await asyncio.to_thread(input, "You: ")
        except EOFError:
            break

        if not user_input.strip():
            continue

        try:
            response = await asyncio.to_thread(
                agent.invoke,
                {"messages": [HumanMessage(content=user_input)]},
                config,
            )

            last_message = response["messages"][-1]
            print(f"\nAgent: {last_message.content}\n")
        except Exception as e:
            error_msg = str(e)
            if "tool_use" in error_msg and "tool_result" in error_msg:
                # Corrupted checkpoint: start a fresh thread
                config["configurable"]["thread_id"] = uuid.uuid4().hex
                print("\nAgent: Sorry, I had an issue with my memory. Let me start fresh. Please try again.\n")
            else:
                print(f"\nAgent: Sorry, I encountered an error: {error_msg}\n")


async def main() -> None:
    """Initialize and run syncfeed."""
    settings = load_config()

    store = Store(settings.data_dir)
    engine = SyncEngine(store, device_id=settings.device_id)
    await engine.start()
    logger.info("Device %s using %s", settings.device_id, store.data_dir)

    watcher = ChangeWatcher(
        store,
        engine.apply_changes,
        debounce=settings.debounce,
        rescan_interval=settings.rescan_interval,
    )
    await watcher.start()

    set_engine(engine, asyncio.get_running_loop())
    agent = create_agent(checkpoint_db_path=settings.checkpoint_path)

    # Each session gets a fresh thread to avoid corrupted checkpoint issues
    config = {"configurable": {"thread_id": uuid.uuid4().hex}}

    poller_task = asyncio.create_task(start_polling(engine, settings.poll_interval))

    try:
        await chat_loop(agent, config)
    except KeyboardInterrupt:
        print("\nGoodbye!")
    finally:
        poller_task.cancel()
        try:
            await poller_task
        except asyncio.CancelledError:
            pass
        await watcher.stop()
        await engine.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
