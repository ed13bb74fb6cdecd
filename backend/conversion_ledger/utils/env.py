import logging
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# backend/.env, next to alembic.ini
BACKEND_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


def load_env_file(path: Path = BACKEND_ENV_PATH) -> bool:
    """Populate os.environ from backend/.env for local runs.

    Exported variables always win over the file. Returns whether a file
    was read.
    """
    if not path.is_file():
        logger.debug(f"[ENV] {path} not present, using process environment only")
        return False

    load_dotenv(dotenv_path=path, override=False)
    logger.info(f"[ENV] Read {path.name} (exported variables take precedence)")
    return True
