"""
Configuration loading: secrets and account ids from the environment (.env),
tunables from config.yaml
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from errors import ConfigurationError

REQUIRED_ENV = [
    'KASPI_API_TOKEN',
    'AMO_SUBDOMAIN',
    'AMO_CLIENT_ID',
    'AMO_CLIENT_SECRET',
    'AMO_REDIRECT_URI',
]

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'kaspi': {
        'api_base': 'https://kaspi.kz/shop/api/v2',
        'page_size': 100,
        'order_states': ['NEW'],
    },
    'amo': {
        'requests_per_second': 7.0,
        'token_refresh_margin': 60,
    },
    'http': {
        'timeout': 30,
    },
    'sync': {
        'max_lookback_days': 14,
        'stale_claim_minutes': 30,
        'contact_tags': ['Kaspi'],
        'lead_tags': ['Kaspi', 'Marketplace'],
    },
    'reconcile': {
        'window_days': 7,
    },
    'scheduler': {
        'fetch_new_interval': 60,
        'reconcile_interval': 600,
        'poll_interval': 0.5,
        'lock_path': 'storage/cron.lock',
    },
}


@dataclass
class Settings:
    """Resolved runtime configuration"""

    kaspi_api_token: str
    amo_subdomain: str
    amo_client_id: str
    amo_client_secret: str
    amo_redirect_uri: str

    database_url: str = 'sqlite:///sync_state.db'
    kaspi_api_base: str = 'https://kaspi.kz/shop/api/v2'
    default_country: str = 'KZ'
    timezone: str = 'Asia/Almaty'

    amo_pipeline_id: int = 0
    amo_status_id: int = 0
    amo_responsible_user_id: int = 0
    amo_catalog_id: int = 0
    amo_lead_order_code_field_id: int = 0
    amo_lead_address_field_id: int = 0
    amo_lead_order_date_field_id: int = 0
    amo_contact_address_field_id: int = 0

    amo_access_token: str = ''
    amo_refresh_token: str = ''
    amo_expires_at: int = 0

    admin_secret: str = ''
    admin_host: str = '0.0.0.0'
    admin_port: int = 5000

    log_level: str = 'INFO'
    log_format: str = 'text'
    log_file: Optional[str] = None

    page_size: int = 100
    order_states: List[str] = field(default_factory=lambda: ['NEW'])
    requests_per_second: float = 7.0
    token_refresh_margin: int = 60
    http_timeout: float = 30
    max_lookback_days: int = 14
    stale_claim_minutes: Optional[int] = 30
    contact_tags: List[str] = field(default_factory=lambda: ['Kaspi'])
    lead_tags: List[str] = field(default_factory=lambda: ['Kaspi', 'Marketplace'])
    reconcile_window_days: int = 7
    fetch_new_interval: int = 60
    reconcile_interval: int = 600
    poll_interval: float = 0.5
    lock_path: str = 'storage/cron.lock'


def _int_env(env: Mapping[str, str], key: str, default: int = 0) -> int:
    raw = (env.get(key) or '').strip()
    if raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def load_yaml_config(config_path: str = 'config.yaml') -> Dict[str, Dict[str, Any]]:
    """
    Load tunables from YAML, merged over the defaults

    Args:
        config_path: Path to configuration file; a missing file yields defaults

    Returns:
        Section name -> settings dictionary
    """
    merged = {section: dict(values) for section, values in DEFAULTS.items()}
    if not config_path or not os.path.exists(config_path):
        return merged

    with open(config_path, 'r') as f:
        loaded = yaml.safe_load(f) or {}

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    for section, values in loaded.items():
        if isinstance(values, dict):
            merged.setdefault(section, {}).update(values)
    return merged


def load_settings(env: Optional[Mapping[str, str]] = None, config_path: str = 'config.yaml') -> Settings:
    """
    Build Settings from the environment and config.yaml

    Raises:
        ConfigurationError: a required variable is missing or malformed
    """
    if env is None:
        load_dotenv()
        env = os.environ

    missing = [key for key in REQUIRED_ENV if not (env.get(key) or '').strip()]
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    cfg = load_yaml_config(config_path)
    kaspi, amo, http = cfg['kaspi'], cfg['amo'], cfg['http']
    sync, reconcile, scheduler = cfg['sync'], cfg['reconcile'], cfg['scheduler']

    states = kaspi.get('order_states') or []
    if isinstance(states, str):
        states = [states]

    return Settings(
        kaspi_api_token=env['KASPI_API_TOKEN'].strip(),
        amo_subdomain=env['AMO_SUBDOMAIN'].strip(),
        amo_client_id=env['AMO_CLIENT_ID'].strip(),
        amo_client_secret=env['AMO_CLIENT_SECRET'].strip(),
        amo_redirect_uri=env['AMO_REDIRECT_URI'].strip(),
        database_url=env.get('DATABASE_URL') or 'sqlite:///sync_state.db',
        kaspi_api_base=(env.get('KASPI_API_BASE') or kaspi['api_base']).rstrip('/'),
        default_country=env.get('DEFAULT_COUNTRY') or 'KZ',
        timezone=env.get('TIMEZONE') or 'Asia/Almaty',
        amo_pipeline_id=_int_env(env, 'AMO_PIPELINE_ID'),
        amo_status_id=_int_env(env, 'AMO_STATUS_ID'),
        amo_responsible_user_id=_int_env(env, 'AMO_RESPONSIBLE_USER_ID'),
        amo_catalog_id=_int_env(env, 'AMO_CATALOG_ID'),
        amo_lead_order_code_field_id=_int_env(env, 'AMO_LEAD_ORDER_CODE_FIELD_ID'),
        amo_lead_address_field_id=_int_env(env, 'AMO_LEAD_ADDRESS_FIELD_ID'),
        amo_lead_order_date_field_id=_int_env(env, 'AMO_LEAD_ORDER_DATE_FIELD_ID'),
        amo_contact_address_field_id=_int_env(env, 'AMO_CONTACT_ADDRESS_FIELD_ID'),
        amo_access_token=(env.get('AMO_ACCESS_TOKEN') or '').strip(),
        amo_refresh_token=(env.get('AMO_REFRESH_TOKEN') or '').strip(),
        amo_expires_at=_int_env(env, 'AMO_EXPIRES_AT'),
        admin_secret=(env.get('ADMIN_SECRET') or env.get('CRON_SECRET') or '').strip(),
        admin_host=env.get('ADMIN_HOST') or '0.0.0.0',
        admin_port=_int_env(env, 'ADMIN_PORT', 5000),
        log_level=(env.get('LOG_LEVEL') or 'INFO').upper(),
        log_format=(env.get('LOG_FORMAT') or 'text').lower(),
        log_file=env.get('LOG_FILE') or None,
        page_size=int(kaspi['page_size']),
        order_states=[str(s).strip().upper() for s in states if str(s).strip()],
        requests_per_second=float(amo['requests_per_second']),
        token_refresh_margin=int(amo['token_refresh_margin']),
        http_timeout=float(http['timeout']),
        max_lookback_days=int(sync['max_lookback_days']),
        stale_claim_minutes=(int(sync['stale_claim_minutes'])
                             if sync.get('stale_claim_minutes') is not None else None),
        contact_tags=list(sync.get('contact_tags') or []),
        lead_tags=list(sync.get('lead_tags') or []),
        reconcile_window_days=int(reconcile['window_days']),
        fetch_new_interval=int(scheduler['fetch_new_interval']),
        reconcile_interval=int(scheduler['reconcile_interval']),
        poll_interval=float(scheduler['poll_interval']),
        lock_path=str(scheduler['lock_path']),
    )
