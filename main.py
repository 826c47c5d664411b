# main.py
"""
Entry point: metering host with slab billing and crossing forecast
"""

import logging
import sys

from errors import ValidationError
from processor import ElectricityProcessor

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('electricity_management.log'),
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


def main():
    try:
        logger.info("=== Starting electricity billing service ===")

        processor = ElectricityProcessor()
        processor.run()

    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except ValidationError as e:
        logger.error(f"Slab table configuration error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
