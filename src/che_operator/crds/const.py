CRD_GROUP = "org.eclipse.che"
CRD_VERSION = "v1"
CRD_PLURAL_CHECLUSTER = "checlusters"
CRD_PLURAL_CHECLUSTERBACKUP = "checlusterbackups"
CRD_PLURAL_CHECLUSTERRESTORE = "checlusterrestores"

CRD_NAMES = [
    f"{CRD_PLURAL_CHECLUSTER}.{CRD_GROUP}",
    f"{CRD_PLURAL_CHECLUSTERBACKUP}.{CRD_GROUP}",
    f"{CRD_PLURAL_CHECLUSTERRESTORE}.{CRD_GROUP}",
]

# Standard kubernetes labels
KUBERNETES_NAME_LABEL = "app.kubernetes.io/name"
KUBERNETES_INSTANCE_LABEL = "app.kubernetes.io/instance"
KUBERNETES_COMPONENT_LABEL = "app.kubernetes.io/component"
KUBERNETES_PART_OF_LABEL = "app.kubernetes.io/part-of"
KUBERNETES_MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"

CHE_ECLIPSE_ORG = "che.eclipse.org"
BACKUP_CHE_ECLIPSE_ORG = "backup.che.eclipse.org"
OPERATOR_NAME = "che-operator"

CA_BUNDLE_COMPONENT = "ca-bundle"
CA_BUNDLE_SELECTOR = {
    KUBERNETES_COMPONENT_LABEL: CA_BUNDLE_COMPONENT,
    KUBERNETES_PART_OF_LABEL: CHE_ECLIPSE_ORG,
}

# Annotations written by the sync layer
HASH_ANNOTATION = "che.eclipse.org/hash256"
NAMESPACE_ANNOTATION = "che.eclipse.org/namespace"
INCLUDED_CONFIGMAPS_ANNOTATION = "che.eclipse.org/included-configmaps"

# Finalizers
CLUSTER_RESOURCES_FINALIZER = "cluster-resources.finalizers.che.eclipse.org"
CRB_FINALIZER_SUFFIX = ".crb.finalizers.che.eclipse.org"
OAUTH_CLIENT_FINALIZER = "oauthclients.finalizers.che.eclipse.org"
MAX_FINALIZER_LENGTH = 63

# Defaults of a managed installation
DEFAULT_CHE_FLAVOR = "che"
DEFAULT_CHE_SERVICE_ACCOUNT = "che"
DEFAULT_CHE_LOG_LEVEL = "INFO"
DEFAULT_JAVA_OPTS = "-XX:MaxRAMPercentage=85.0"
DEFAULT_POSTGRES_USER = "pgche"
DEFAULT_POSTGRES_HOST = "postgres"
DEFAULT_POSTGRES_PORT = "5432"
DEFAULT_POSTGRES_DB = "dbche"
DEFAULT_POSTGRES_SECRET = "postgres-credentials"
DEFAULT_POSTGRES_PVC = "postgres-data"
DEFAULT_POSTGRES_PVC_SIZE = "1Gi"
DEFAULT_WORKSPACE_PVC_SIZE = "10Gi"
DEFAULT_PVC_STRATEGY = "common"
DEFAULT_IDENTITY_SECRET = "che-identity-secret"
DEFAULT_IDENTITY_POSTGRES_SECRET = "che-identity-postgres-secret"
DEFAULT_IDENTITY_ADMIN_USER = "admin"
DEFAULT_SERVER_TRUST_STORE_CONFIGMAP = "ca-certs"
DEFAULT_MERGED_CA_CONFIGMAP = "ca-certs-merged"
DEFAULT_CHE_TLS_SECRET = "che-tls"
DEFAULT_INGRESS_CLASS = "nginx"
DEFAULT_SECURITY_CONTEXT_ID = "1724"
INJECT_TRUSTED_CABUNDLE_LABEL = "config.openshift.io/inject-trusted-cabundle"

# Component names, also used as object names
SERVER_NAME = "che"
SERVER_SERVICE_NAME = "che-host"
POSTGRES_NAME = "postgres"
KEYCLOAK_NAME = "keycloak"
DASHBOARD_NAME = "che-dashboard"
GATEWAY_NAME = "che-gateway"
GATEWAY_CONFIG_NAME = "che-gateway-config"
DEVFILE_REGISTRY_NAME = "devfile-registry"
PLUGIN_REGISTRY_NAME = "plugin-registry"

# Backup
BACKUP_DATA_DIR = "/tmp/che-backup-data"
RESTORE_DATA_DIR = "/tmp/che-restore-data"
BACKUP_METADATA_FILE = "backup-data.txt"
BACKUP_CR_FILE = "che-cr.yaml"
BACKUP_DB_DIR = "db"
BACKUP_CONFIGMAPS_DIR = "configmaps"
BACKUP_SECRETS_DIR = "secrets"
BACKUP_METADATA_VERSION = "v1"

INTERNAL_BACKUP_SERVER_COMPONENT = "che-backup-internal-rest-server"
INTERNAL_BACKUP_SERVER_DEPLOYMENT = "backup-rest-server-deployment"
INTERNAL_BACKUP_SERVER_SERVICE = "backup-rest-server-service"
INTERNAL_BACKUP_SERVER_SECRET = "backup-rest-server-repo-password"
INTERNAL_BACKUP_SERVER_PORT = 8000
INTERNAL_BACKUP_SERVER_REPO = "che"

# Keys of secrets holding backup server credentials
REPO_PASSWORD_SECRET_KEY = "repo-password"
USERNAME_SECRET_KEY = "username"
PASSWORD_SECRET_KEY = "password"
SSH_PRIVATE_KEY_SECRET_KEY = "ssh-privatekey"
AWS_ACCESS_KEY_ID_SECRET_KEY = "awsAccessKeyId"
AWS_SECRET_ACCESS_KEY_SECRET_KEY = "awsSecretAccessKey"
