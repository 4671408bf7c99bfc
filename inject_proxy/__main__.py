import logging
import sys

import uvicorn

from inject_proxy.config import ConfigError, load_config
from inject_proxy.server import create_app
from inject_proxy.vars import FORWARDED_ALLOW_IPS, HOST, LOG_LEVEL, PORT

logger = logging.getLogger("uvicorn.error")


def main() -> int:
    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Invalid configuration, not starting: {e}")
        return 1

    uvicorn.run(
        create_app(config),
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL,
        # Client addresses come from the trusted front-end tier
        proxy_headers=True,
        forwarded_allow_ips=FORWARDED_ALLOW_IPS,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
