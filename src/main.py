import argparse
import asyncio
import sys
from src.workflows.pipeline import pipeline
from src.services.logger import logger

def main():
    parser = argparse.ArgumentParser(description="Feed ingestion and enrichment service")
    parser.add_argument('--once', action='store_true',
                        help='Poll due feeds a single time, wait for enrichment and exit')
    args = parser.parse_args()

    try:
        if args.once:
            polled = asyncio.run(pipeline.run_once())
            logger.info(f"Polled {polled} feeds")
        else:
            asyncio.run(pipeline.run_forever())
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
