import base64

from ivoryoperator.crds.exec import ExecResult
from ivoryoperator.crds.ivorycluster import IvoryCluster
from ivoryoperator.operator.instances import ObservedInstances
from ivoryoperator.operator.ivorycluster.password import scram_verifier
from ivoryoperator.operator.ivorycluster.pgmonitor import (
    MONITORING_USER,
    build_monitoring_secret_intent,
    reconcile_exporter,
    secret_verifier,
)
from tests.helpers import make_cluster, make_pod


class RecordingRunner:
    def __init__(self, setup_sql="CREATE EXTENSION IF NOT EXISTS pg_stat_statements;"):
        self.calls = []
        self.setup_sql = setup_sql

    def __call__(self, container, stdin, command):
        self.calls.append((container, stdin, command))
        if container == "exporter":
            return ExecResult(stdout=self.setup_sql, stderr="", returncode=0)
        return ExecResult(stdout="", stderr="", returncode=0)


def _writable(containers=("database", "exporter")):
    observed = ObservedInstances.from_objects([make_pod("hippo-00-a", primary=True, containers=containers)])
    return observed.writable()


def _secret(cluster):
    return build_monitoring_secret_intent(cluster, None, generate=lambda: ("pw", "SCRAM-SHA-256$x"))


def test_secret_values_are_reused():
    cluster = IvoryCluster.from_dict(make_cluster(exporter=True))
    first = _secret(cluster)
    second = build_monitoring_secret_intent(cluster, first, generate=lambda: ("other", "other"))
    assert second["data"] == first["data"]
    assert base64.b64decode(first["data"]["password"]).decode() == "pw"
    assert secret_verifier(first) == "SCRAM-SHA-256$x"
    assert first["metadata"]["name"] == "hippo-monitoring"


def test_scram_verifier_format():
    verifier = scram_verifier("secret", salt=b"0123456789abcdef", iterations=4096)
    assert verifier.startswith("SCRAM-SHA-256$4096:")
    assert verifier == scram_verifier("secret", salt=b"0123456789abcdef", iterations=4096)


def test_sql_runs_once_per_revision(logger):
    cluster = IvoryCluster.from_dict(make_cluster(exporter=True))
    runner = RecordingRunner()
    secret = _secret(cluster)

    reconcile_exporter(cluster, _writable(), secret, runner, logger)
    revision = cluster.status["monitoring"]["exporterConfiguration"]
    assert [call[0] for call in runner.calls] == ["exporter", "database"]
    database_sql = runner.calls[1][1]
    assert runner.setup_sql in database_sql
    assert f"GRANT pg_monitor TO {MONITORING_USER};" in database_sql

    # Nothing changed, so nothing is executed again.
    runner.calls.clear()
    reconcile_exporter(cluster, _writable(), secret, runner, logger)
    assert runner.calls == []
    assert cluster.status["monitoring"]["exporterConfiguration"] == revision


def test_new_verifier_changes_revision(logger):
    cluster = IvoryCluster.from_dict(make_cluster(exporter=True))
    runner = RecordingRunner()
    reconcile_exporter(cluster, _writable(), _secret(cluster), runner, logger)
    revision = cluster.status["monitoring"]["exporterConfiguration"]

    rotated = build_monitoring_secret_intent(cluster, None, generate=lambda: ("pw2", "SCRAM-SHA-256$y"))
    reconcile_exporter(cluster, _writable(), rotated, runner, logger)
    assert cluster.status["monitoring"]["exporterConfiguration"] != revision


def test_skipped_without_writable_instance(logger):
    cluster = IvoryCluster.from_dict(make_cluster(exporter=True))
    runner = RecordingRunner()
    reconcile_exporter(cluster, None, _secret(cluster), runner, logger)
    assert runner.calls == []
    assert "monitoring" not in cluster.status


def test_waits_for_exporter_container(logger):
    cluster = IvoryCluster.from_dict(make_cluster(exporter=True))
    runner = RecordingRunner()
    reconcile_exporter(cluster, _writable(containers=("database",)), _secret(cluster), runner, logger)
    assert runner.calls == []


def test_disabling_exporter_revokes_login(logger):
    cluster = IvoryCluster.from_dict(make_cluster(exporter=False))
    runner = RecordingRunner()
    reconcile_exporter(cluster, _writable(containers=("database",)), None, runner, logger)

    assert len(runner.calls) == 1
    container, sql, _ = runner.calls[0]
    assert container == "database"
    assert f"ALTER ROLE {MONITORING_USER} NOLOGIN;" in sql
    assert cluster.status["monitoring"]["exporterConfiguration"]
