CRD_GROUP = "ivory-operator.highgo.com"
CRD_VERSION = "v1beta1"
CRD_API_VERSION = f"{CRD_GROUP}/{CRD_VERSION}"
CRD_PLURAL_IVORYCLUSTER = "ivoryclusters"
CRD_PLURAL_IVYUPGRADE = "ivyupgrades"

# Labels
LABEL_CLUSTER = f"{CRD_GROUP}/cluster"
LABEL_INSTANCE = f"{CRD_GROUP}/instance"
LABEL_ROLE = f"{CRD_GROUP}/role"
LABEL_PATRONI = f"{CRD_GROUP}/patroni"
LABEL_IVYUPGRADE = f"{CRD_GROUP}/ivyupgrade"
LABEL_VERSION = f"{CRD_GROUP}/version"
LABEL_PGBACKREST_BACKUP = f"{CRD_GROUP}/pgbackrest-backup"
LABEL_PGBACKREST_CONFIG = f"{CRD_GROUP}/pgbackrest-config"
LABEL_DATA = f"{CRD_GROUP}/data"

# Label values
ROLE_PRIMARY = "master"
ROLE_IVYUPGRADE = "ivyupgrade"
ROLE_REMOVE_DATA = "removedata"
ROLE_MONITORING = "monitoring"
BACKUP_REPLICA_CREATE = "replica-create"

# Annotations
ANNOTATION_ALLOW_UPGRADE = f"{CRD_GROUP}/allow-upgrade"
ANNOTATION_PGBACKREST_IP_VERSION = f"{CRD_GROUP}/pgbackrest-ip-version"

# Container names
CONTAINER_DATABASE = "database"
CONTAINER_EXPORTER = "exporter"
CONTAINER_PGBACKREST_LOG_DIR = "pgbackrest-log-dir"
