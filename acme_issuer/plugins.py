"""
Module containing the validation backends: pluggable components publishing and clearing
the proofs requested by the ACME directory for a single domain
"""
import abc
import logging
import os
import subprocess

from acme_issuer.acme_requests import ACMEChallengeType, ACMEConfigurationError

DEFAULT_PLUGIN = 'manual'
DEFAULT_ZONE_UPDATE_CMD_TIMEOUT = 60.0
WEBROOT_CHALLENGE_PATH = os.path.join('.well-known', 'acme-challenge')

logger = logging.getLogger(__name__)  # pylint: disable=invalid-name


class ValidationBackendError(Exception):
    """A validation backend failed to publish or clear a proof"""


class BaseValidationBackend(abc.ABC):
    """
    Base validation backend. Subclasses set challenge_type and implement publish() and cleanup().
    Every operation must be idempotent, the orchestrator may repeat them when resuming an order.
    """
    challenge_type = None

    def __init__(self, name, config=None):
        self.name = name
        self.config = dict(config or {})

    @property
    def prevalidate(self):
        """True if published proofs should be checked before asking the ACME directory to validate them"""
        return bool(self.config.get('prevalidate', False))

    @property
    def validation_params(self):
        """Keyword arguments for the proof validate() method"""
        return {}

    @abc.abstractmethod
    def publish(self, domain, proof):
        """Makes proof available for the ACME directory"""

    def notify_ready(self, proof):
        """Called right before the ACME directory is asked to validate proof"""

    @abc.abstractmethod
    def cleanup(self, domain, proof):
        """Removes a previously published proof"""

    def __str__(self):
        return '{} ({})'.format(self.name, self.challenge_type.value)


class ManualBackend(BaseValidationBackend):
    """dns-01 backend that asks the operator to create the TXT records"""
    challenge_type = ACMEChallengeType.DNS01

    def publish(self, domain, proof):
        logger.warning("Manual action required for %s: create TXT record %s with value %s",
                       domain, proof.validation_domain_name, proof.validation)

    def cleanup(self, domain, proof):
        logger.warning("Manual action required for %s: TXT record %s with value %s can be removed",
                       domain, proof.validation_domain_name, proof.validation)


class DNSExecBackend(BaseValidationBackend):
    """
    dns-01 backend that delegates DNS updates to an external command.
    Records are batched and the zone update command runs once, when the first of them is needed.
    The command is invoked as: cmd [--remote-servers server1 server2 --] name1 value1 name2 value2...
    """
    challenge_type = ACMEChallengeType.DNS01

    def __init__(self, name, config=None):
        super().__init__(name, config)
        zone_update_cmd = self.config.get('zone_update_cmd')
        if not zone_update_cmd or not os.access(zone_update_cmd, os.X_OK):
            raise ValidationBackendError('Missing/invalid zone_update_cmd for plugin {}: {}'.format(name,
                                                                                                  zone_update_cmd))
        try:
            self.config['zone_update_cmd_timeout'] = float(self.config['zone_update_cmd_timeout'])
        except (KeyError, TypeError, ValueError):
            logger.warning("Missing/invalid DNS zone updater CMD timeout, using the default one: %.2f",
                           DEFAULT_ZONE_UPDATE_CMD_TIMEOUT)
            self.config['zone_update_cmd_timeout'] = DEFAULT_ZONE_UPDATE_CMD_TIMEOUT
        self._pending = []

    @property
    def validation_params(self):
        return {'dns_servers': self.config.get('validation_dns_servers')}

    def _run(self, cmd, proofs):
        params = []
        remote_servers = self.config.get('sync_dns_servers')
        if remote_servers:
            params = ['--remote-servers'] + list(remote_servers) + ['--']
        for proof in proofs:
            params.append(proof.validation_domain_name)
            params.append(proof.validation)

        timeout = self.config['zone_update_cmd_timeout']
        logger.info("Running subprocess %s", [cmd] + params)
        try:
            subprocess.check_call([cmd] + params,
                                  stdout=subprocess.DEVNULL,
                                  stderr=subprocess.DEVNULL,
                                  timeout=timeout)
        except subprocess.CalledProcessError as cpe:
            raise ValidationBackendError('Unexpected return code spawning {}: {}'.format(cmd, cpe.returncode)) \
                from cpe
        except subprocess.TimeoutExpired as timeout_error:
            raise ValidationBackendError('Unable to run {} in {} seconds'.format(cmd, timeout)) from timeout_error
        except OSError as os_error:
            raise ValidationBackendError('Unable to run {}'.format(cmd)) from os_error

    def publish(self, domain, proof):
        if proof not in self._pending:
            logger.info("Queueing TXT record %s for %s", proof.validation_domain_name, domain)
            self._pending.append(proof)

    def notify_ready(self, proof):
        if proof not in self._pending:
            return
        pending, self._pending = self._pending, []
        logger.info("Triggering DNS zone update for %d record(s)", len(pending))
        self._run(self.config['zone_update_cmd'], pending)

    def cleanup(self, domain, proof):
        if proof in self._pending:
            self._pending.remove(proof)
        cleanup_cmd = self.config.get('cleanup_cmd')
        if cleanup_cmd is None:
            logger.info("No cleanup_cmd configured for plugin %s, leaving %s in place",
                        self.name, proof.validation_domain_name)
            return
        self._run(cleanup_cmd, [proof])


class WebrootBackend(BaseValidationBackend):
    """http-01 backend that serves the key authorizations from a web server document root"""
    challenge_type = ACMEChallengeType.HTTP01

    def __init__(self, name, config=None):
        super().__init__(name, config)
        if not self.config.get('path'):
            raise ValidationBackendError('Missing webroot path for plugin {}'.format(name))

    def _file_path(self, proof):
        return os.path.join(self.config['path'], WEBROOT_CHALLENGE_PATH, proof.file_name)

    def publish(self, domain, proof):
        file_path = self._file_path(proof)
        try:
            os.makedirs(os.path.dirname(file_path), mode=0o755, exist_ok=True)
            proof.save(file_path)
        except OSError as os_error:
            raise ValidationBackendError('Unable to write {}'.format(file_path)) from os_error
        logger.info("Published http-01 proof for %s on %s", domain, file_path)

    def cleanup(self, domain, proof):
        try:
            os.remove(self._file_path(proof))
        except FileNotFoundError:
            pass
        except OSError as os_error:
            raise ValidationBackendError('Unable to remove {}'.format(self._file_path(proof))) from os_error


PLUGINS = {
    'manual': ManualBackend,
    'dns-exec': DNSExecBackend,
    'webroot': WebrootBackend,
}


def load_backends(names, plugins_config=None):
    """
    Returns a list of backends matching names. Backends sharing a name are the same instance.
    Unknown plugins or invalid plugin configurations are reported as ACMEConfigurationError
    """
    if plugins_config is None:
        plugins_config = {}
    if not names:
        names = [DEFAULT_PLUGIN]

    instances = {}
    ret = []
    for name in names:
        if name not in instances:
            try:
                backend_class = PLUGINS[name]
            except KeyError:
                raise ACMEConfigurationError('Unknown validation plugin: {}'.format(name), stage='plugin')
            try:
                instances[name] = backend_class(name, plugins_config.get(name))
            except ValidationBackendError as backend_error:
                raise ACMEConfigurationError(str(backend_error), stage='plugin') from backend_error
        ret.append(instances[name])

    return ret
