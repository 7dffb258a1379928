import logging
import sys


def setup_logging(level: int = logging.INFO):
    logging.basicConfig(
        stream=sys.stdout,
        level=level,
        format="%(asctime)s %(levelname)s %(name)s :: %(message)s",
    )
    # httpx logs every request line at INFO; keep it for warnings only
    logging.getLogger("httpx").setLevel(logging.WARNING)
