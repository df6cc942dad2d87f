"""
Module containing configuration handling classes

Alex Monk <krenair@gmail.com> 2018
Valentin Gutierrez <vgutierrez@wikimedia.org> 2018-2021
"""
import logging

import yaml

from acme_issuer.acme_requests import BASEPATH, DIRECTORIES
from acme_issuer.plugins import DEFAULT_PLUGIN
from acme_issuer.x509 import KEY_TYPES

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name

# default values that can be customized via the config file. Check the README for a valid example
DEFAULT_CONFIG_PATH = '/etc/acme-issuer/config.yaml'
DEFAULT_ORDERS_PATH = '/var/lib/acme-issuer/orders'
DEFAULT_DIRECTORY = 'letsencrypt'
DEFAULT_ACCOUNT_KEY_TYPE = 'ec-prime256v1'
DEFAULT_CERTIFICATE_KEY_TYPE = 'rsa-2048'
DEFAULT_DNS_SLEEP = 120
DEFAULT_VALIDATION_TIMEOUT = 60
DEFAULT_ISSUE_TIMEOUT = 60
DEFAULT_POLL_INTERVAL = 2

DURATION_DEFAULTS = {
    'dns_sleep': DEFAULT_DNS_SLEEP,
    'validation_timeout': DEFAULT_VALIDATION_TIMEOUT,
    'issue_timeout': DEFAULT_ISSUE_TIMEOUT,
    'poll_interval': DEFAULT_POLL_INTERVAL,
}
KEY_TYPE_DEFAULTS = {
    'account_key_type': DEFAULT_ACCOUNT_KEY_TYPE,
    'certificate_key_type': DEFAULT_CERTIFICATE_KEY_TYPE,
}


class IssuerConfig:
    """Class representing acme-issuer configuration"""
    def __init__(self, *, directories=None, default_directory=DEFAULT_DIRECTORY, accounts_path=BASEPATH,
                 orders_path=DEFAULT_ORDERS_PATH, defaults=None, plugins=None):
        self.directories = dict(DIRECTORIES)
        if directories:
            self.directories.update(directories)
        self.default_directory = default_directory
        self.accounts_path = accounts_path
        self.orders_path = orders_path
        self.defaults = IssuerConfig._get_defaults(defaults or {})
        self.plugins = plugins or {}

    @staticmethod
    def _get_defaults(defaults):
        ret = dict(KEY_TYPE_DEFAULTS)
        ret.update(DURATION_DEFAULTS)
        ret['pfx_password'] = None
        ret['plugin'] = DEFAULT_PLUGIN

        for key, default_value in KEY_TYPE_DEFAULTS.items():
            if key not in defaults:
                continue
            if defaults[key] in KEY_TYPES:
                ret[key] = defaults[key]
            else:
                logger.warning("Ignoring invalid %s %s. Using the default one: %s", key, defaults[key],
                               default_value)

        for key, default_value in DURATION_DEFAULTS.items():
            if key not in defaults:
                continue
            try:
                value = float(defaults[key])
                if value < 0:
                    raise ValueError(value)
                ret[key] = value
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid %s %s. Using the default one: %s", key, defaults[key],
                               default_value)

        if defaults.get('pfx_password') is not None:
            ret['pfx_password'] = str(defaults['pfx_password'])

        if 'plugin' in defaults:
            if isinstance(defaults['plugin'], str) and defaults['plugin']:
                ret['plugin'] = defaults['plugin']
            else:
                logger.warning("Ignoring invalid default plugin %s. Using the default one: %s", defaults['plugin'],
                               DEFAULT_PLUGIN)

        return ret

    @staticmethod
    def load(file_name=DEFAULT_CONFIG_PATH):
        """Load a config from the specified file_name"""
        logger.debug("Loading config file: %s", file_name)
        try:
            with open(file_name, encoding='utf-8') as config_file:
                config = yaml.safe_load(config_file)
        except FileNotFoundError:
            logger.warning("Config file %s not found, using the default configuration", file_name)
            config = None

        if config is None:
            config = {}
        if not isinstance(config, dict):
            logger.warning("Ignoring malformed config file %s, using the default configuration", file_name)
            config = {}

        directories = config.get('directories', {})
        if not isinstance(directories, dict) or not all(isinstance(url, str) for url in directories.values()):
            logger.warning("Ignoring invalid directories section")
            directories = {}

        default_directory = config.get('default_directory', DEFAULT_DIRECTORY)
        if not isinstance(default_directory, str):
            logger.warning("Ignoring invalid default directory %s. Using the default one: %s", default_directory,
                           DEFAULT_DIRECTORY)
            default_directory = DEFAULT_DIRECTORY

        paths = config.get('paths', {})
        if not isinstance(paths, dict):
            logger.warning("Ignoring invalid paths section")
            paths = {}

        defaults = config.get('defaults', {})
        if not isinstance(defaults, dict):
            logger.warning("Ignoring invalid defaults section")
            defaults = {}

        plugins = config.get('plugins', {})
        if not isinstance(plugins, dict):
            logger.warning("Ignoring invalid plugins section")
            plugins = {}

        return IssuerConfig(directories=directories,
                            default_directory=default_directory,
                            accounts_path=paths.get('accounts', BASEPATH),
                            orders_path=paths.get('orders', DEFAULT_ORDERS_PATH),
                            defaults=defaults,
                            plugins=plugins)
