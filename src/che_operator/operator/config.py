import logging
import os

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/che-operator/config.yaml"
DEFAULT_WATCH_NAMESPACE = ""
DEFAULT_OPERATOR_NAMESPACE = "eclipse-che"
DEFAULT_WORKER_LIMIT = 1
DEFAULT_POSTING_ENABLED = False
DEFAULT_RECONCILE_INTERVAL = 60
DEFAULT_REQUEUE_DELAY = 2
DEFAULT_BACKUP_TIMEOUT = 15 * 60
DEFAULT_RESTORE_TIMEOUT = 60 * 60
DEFAULT_EXEC_TIMEOUT = 10 * 60
DEFAULT_BACKUP_DATA_DIR = "/tmp/che-backup-data"
DEFAULT_RESTORE_DATA_DIR = "/tmp/che-restore-data"
DEFAULT_BACKUP_DATABASES = "dbche,keycloak"
DEFAULT_CODEREADY_BACKUP_DATABASES = "codeready,keycloak"
DEFAULT_RESTIC_BINARY = "restic"
DEFAULT_TEMPLATES_PATH = os.path.join(
    os.path.dirname(__file__), "platform", "manifests"
)

# Images of the managed components. Each one can be overridden with the
# RELATED_IMAGE_<component> environment variable so that rebuilding the
# operator image retags the whole installation.
DEFAULT_IMAGES = {
    "che_server": "quay.io/eclipse/che-server:7.42.0",
    "dashboard": "quay.io/eclipse/che-dashboard:7.42.0",
    "plugin_registry": "quay.io/eclipse/che-plugin-registry:7.42.0",
    "devfile_registry": "quay.io/eclipse/che-devfile-registry:7.42.0",
    "postgres": "quay.io/eclipse/che--centos--postgresql-13-centos7:1-71b2468",
    "keycloak": "quay.io/eclipse/che-keycloak:7.42.0",
    "single_host_gateway": "quay.io/eclipse/che--traefik:v2.5.0",
    "single_host_gateway_config_sidecar": "quay.io/che-incubator/configbump:0.1.4",
    "devworkspace_controller": "quay.io/devfile/devworkspace-controller:v0.11.0",
    "internal_rest_backup_server": "quay.io/eclipse/che-backup-server-rest:eeacd92",
}


def get_bool(value):
    return str(value).lower() in ("true", "1", "t")


def get_list(value):
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value).split(",") if v.strip()]


class OperatorConfig:
    def __init__(self):
        self.config_path = os.environ.get("CHE_OPERATOR_CONFIG_PATH", DEFAULT_CONFIG_PATH)
        self._config = self._load_config()

        self.watch_namespace = self._get_value(
            "WATCH_NAMESPACE", "watchNamespace", DEFAULT_WATCH_NAMESPACE
        )
        self.operator_namespace = self._get_value(
            "CHE_OPERATOR_NAMESPACE", "operatorNamespace", DEFAULT_OPERATOR_NAMESPACE
        )
        self.worker_limit = self._get_value(
            "CHE_OPERATOR_WORKER_LIMIT", "workerLimit", DEFAULT_WORKER_LIMIT, caster=int
        )
        self.posting_enabled = self._get_value(
            "CHE_OPERATOR_POSTING_ENABLED",
            "postingEnabled",
            DEFAULT_POSTING_ENABLED,
            caster=get_bool,
        )
        self.reconcile_interval = self._get_value(
            "CHE_OPERATOR_RECONCILE_INTERVAL",
            "reconcileInterval",
            DEFAULT_RECONCILE_INTERVAL,
            caster=int,
        )
        self.requeue_delay = self._get_value(
            "CHE_OPERATOR_REQUEUE_DELAY", "requeueDelay", DEFAULT_REQUEUE_DELAY, caster=float
        )
        self.backup_timeout = self._get_value(
            "CHE_OPERATOR_BACKUP_TIMEOUT", "backupTimeout", DEFAULT_BACKUP_TIMEOUT, caster=int
        )
        self.restore_timeout = self._get_value(
            "CHE_OPERATOR_RESTORE_TIMEOUT", "restoreTimeout", DEFAULT_RESTORE_TIMEOUT, caster=int
        )
        self.exec_timeout = self._get_value(
            "CHE_OPERATOR_EXEC_TIMEOUT", "execTimeout", DEFAULT_EXEC_TIMEOUT, caster=int
        )
        self.backup_data_dir = self._get_value(
            "CHE_OPERATOR_BACKUP_DATA_DIR", "backupDataDir", DEFAULT_BACKUP_DATA_DIR
        )
        self.restore_data_dir = self._get_value(
            "CHE_OPERATOR_RESTORE_DATA_DIR", "restoreDataDir", DEFAULT_RESTORE_DATA_DIR
        )
        self.backup_databases = self._get_value(
            "CHE_OPERATOR_BACKUP_DATABASES",
            "backupDatabases",
            DEFAULT_BACKUP_DATABASES,
            caster=get_list,
        )
        self.codeready_backup_databases = self._get_value(
            "CHE_OPERATOR_CODEREADY_BACKUP_DATABASES",
            "codereadyBackupDatabases",
            DEFAULT_CODEREADY_BACKUP_DATABASES,
            caster=get_list,
        )
        self.restic_binary = self._get_value(
            "CHE_OPERATOR_RESTIC_BINARY", "resticBinary", DEFAULT_RESTIC_BINARY
        )
        self.templates_path = self._get_value(
            "CHE_OPERATOR_TEMPLATES_PATH", "templatesPath", DEFAULT_TEMPLATES_PATH
        )
        self.images = {
            component: self._get_image(component, default)
            for component, default in DEFAULT_IMAGES.items()
        }

    def _get_value(self, env_key, yaml_key, default, caster=None):
        val = os.environ.get(env_key, self._config.get(yaml_key, default))
        if caster:
            return caster(val)
        return val

    def _get_image(self, component, default):
        images = self._config.get("images") or {}
        return os.environ.get(f"RELATED_IMAGE_{component}", images.get(component, default))

    def watches(self, namespace):
        """True when objects in `namespace` are handled by this operator."""
        return not self.watch_namespace or namespace == self.watch_namespace

    def databases_for_flavor(self, flavor):
        """Databases captured by a backup of an installation of the given flavor."""
        if flavor == "codeready":
            return list(self.codeready_backup_databases)
        return list(self.backup_databases)

    def _load_config(self):
        try:
            with open(self.config_path, "r") as f:
                config_data = yaml.safe_load(f)
                logger.info(f"Loaded operator configuration from {self.config_path}")
                return config_data if config_data else {}
        except FileNotFoundError:
            logger.info(
                f"Operator config file not found at {self.config_path}, using default values."
            )
            return {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading operator configuration from {self.config_path}: {e}")
            return {}


# Global config instance to be used across the operator
config = OperatorConfig()


def watched(namespace, **_):
    """kopf ``when`` filter restricting handlers to the watched namespace."""
    return config.watches(namespace)
