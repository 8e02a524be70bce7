import os
import sys
import json
import logging

CONFIG_FILENAME = 'config.json'
DB_FILENAME = 'ksef.db'

DEFAULT_CONFIG = {
    'auth_method': 'token',
    'token': None,
    'nip': None,
    'environment': 'prod',
    'api_url': None,
    'timeout': 30,
    'db_path': None,
    'cache_freshness_minutes': 5,
    'strict_status_poll': False,
    'refresh_interval': 60,
}

logger = logging.getLogger(__name__)


def data_dir() -> str:
    env_dir = os.environ.get('KSEF_DATA_DIR')
    if env_dir:
        return env_dir
    if sys.platform == 'win32':
        return os.path.join(os.environ.get('APPDATA') or os.path.expanduser('~'), 'KSeF Desktop')
    return os.path.join(os.path.expanduser('~'), '.ksef')


def config_path() -> str:
    return os.path.join(data_dir(), CONFIG_FILENAME)


def default_db_path() -> str:
    return os.path.join(data_dir(), DB_FILENAME)


def _apply_env(config: dict) -> dict:
    token = os.environ.get('KSEF_TOKEN')
    if token:
        config['token'] = token
        config['auth_method'] = 'token'
    if os.environ.get('KSEF_ENV'):
        config['environment'] = os.environ['KSEF_ENV']
    if os.environ.get('KSEF_API_URL'):
        config['api_url'] = os.environ['KSEF_API_URL']
    return config


def get_config(path: str = None) -> dict:
    """
    Load KSeF configuration.

    Values from the JSON config file are overlaid on the defaults, then the
    KSEF_TOKEN / KSEF_ENV / KSEF_API_URL environment variables are applied.

    Args:
        path: Config file path (default: config.json in the data directory)

    Returns:
        Config dict, or None when neither a config file nor KSEF_TOKEN exists
    """
    path = path or config_path()
    config = dict(DEFAULT_CONFIG)
    found = False

    try:
        with open(path, 'r', encoding='utf-8') as config_file:
            stored = json.load(config_file)
        if not isinstance(stored, dict):
            raise ValueError("config root must be an object")
        config.update(stored)
        found = True
        logger.debug(f"KSeF config loaded from: {path}")
    except FileNotFoundError:
        logger.debug(f"No KSeF config at: {path}")
    except (json.JSONDecodeError, ValueError) as e:
        logger.error(f"Invalid KSeF config {path}: {e}")

    _apply_env(config)
    if not found and not config.get('token'):
        logger.warning("No configuration found - KSeF token has to be configured first")
        return None

    if not config.get('db_path'):
        config['db_path'] = default_db_path()

    return config


def save_config(config: dict, path: str = None) -> str:
    """
    Save configuration as JSON, readable by the owner only.

    Returns:
        Path of the written file
    """
    path = path or config_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    stored = {key: value for key, value in config.items() if key in DEFAULT_CONFIG}
    with open(path, 'w', encoding='utf-8') as config_file:
        json.dump(stored, config_file, ensure_ascii=False, indent=4)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.warning(f"Could not restrict permissions of {path}: {e}")

    logger.info(f"KSeF config saved to: {path}")
    return path
