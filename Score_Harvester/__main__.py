import logging
import sys

from . import cli

if __name__ == "__main__":
    # Example:
    #   export API_BASE_URL=... API_PERSON_ID=... API_COOKIE=...
    #   python -m Score_Harvester --date 2024-06-01
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(cli())
