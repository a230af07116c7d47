import logging
import sys
from pathlib import Path

from doccrawl import doccrawl, load_config


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config_path = sys.argv[1] if len(sys.argv) > 1 else str(Path(__file__).with_name("sources.example.yaml"))
    config, sources = load_config(config_path)
    logging.info("Starting crawl of %d sources; output=%s", len(sources), config.output_dir)
    counts = doccrawl(sources, config=config)
    for name, count in counts.items():
        logging.info("%s: %d pages", name, count)


if __name__ == "__main__":
    main()
