import logging
import sys

from . import cli

if __name__ == "__main__":
    # Example:
    #   SCORE_STORE=local SCORE_DATA_ROOT=./score-data python -m Monthly_Rollup --month 2024-06
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(cli())
