import asyncio
import logging

from hydra.utils import instantiate

from batchkeeper.framework import (
    BatchConfig,
    BatchEngine,
    CallbackChannel,
    CallbackHandlerRegistry,
    GlobalContext,
    Store,
)
from batchkeeper.utils import (
    load_config,
    load_handlers,
    mask_sensitive_info,
    parse_args,
    setup_logging,
)


async def main() -> None:
    """Run a batchkeeper callback consumer."""
    args = parse_args()

    # Load the configuration file
    config = load_config(args.config)
    # Setup logging
    logging_config = load_config(args.logging)
    setup_logging(logging_config)
    logger = logging.getLogger("batchkeeper")

    # Show the configuration
    logger.info("starting batchkeeper")
    logger.info("config=%s", mask_sensitive_info(config))

    # Initialize the store and the callback channel
    store: Store = instantiate(config["store"])
    channel: CallbackChannel = instantiate(config["callback_channel"])

    # Load the callback handlers
    handlers = CallbackHandlerRegistry(load_handlers(config.get("callbacks") or {}))
    logger.info("callback handlers loaded", extra={"handlers": handlers.names()})

    gctx = GlobalContext(
        config=BatchConfig.model_validate(config.get("batch") or {}),
        store=store,
        channel=channel,
        handlers=handlers,
    )
    BatchEngine(gctx)

    # Consume callbacks until cancelled
    try:
        await channel.start()
    finally:
        await channel.stop()
        await store.close()
        logger.info("batchkeeper stopped")


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
