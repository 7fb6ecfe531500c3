from unittest.mock import MagicMock

import pytest
from kubernetes import client

from ivoryoperator.crds.const import CRD_GROUP, CRD_VERSION
from ivoryoperator.crds.registry import ResourceRegistry, ResourceType, create_operator_registry
from ivoryoperator.utils.kube import MERGE_PATCH, KubeStore, label_selector, merge_patch_diff


def test_registry_routes_built_in_and_custom_kinds():
    registry = create_operator_registry()
    job = registry.lookup("Job")
    assert job.api_class is client.BatchV1Api
    assert job.singular == "job"
    assert not job.is_custom

    upgrade = registry.lookup("IvyUpgrade")
    assert upgrade.is_custom
    assert upgrade.group == CRD_GROUP
    assert upgrade.version == CRD_VERSION
    assert {rt.kind for rt in registry} == {
        "IvoryCluster",
        "IvyUpgrade",
        "Job",
        "Pod",
        "StatefulSet",
        "Endpoints",
        "ConfigMap",
        "Secret",
    }


def test_registry_rejects_duplicates_and_unknown_kinds():
    registry = ResourceRegistry()
    registry.register(ResourceType("Pod", "v1", "pods", True, client.CoreV1Api, "pod"))
    with pytest.raises(ValueError):
        registry.register(ResourceType("Pod", "v1", "pods", True, client.CoreV1Api, "pod"))
    with pytest.raises(KeyError):
        registry.lookup("Deployment")
    assert "Pod" in registry


def test_label_selector():
    assert label_selector({"a": "1", "b": "2"}) == "a=1,b=2"


def test_merge_patch_diff_sends_only_changes():
    before = {"postgresVersion": 14, "conditions": [{"type": "A"}], "monitoring": {"a": "1", "b": "2"}}
    after = {"postgresVersion": 14, "conditions": [{"type": "A"}, {"type": "B"}], "monitoring": {"a": "1"}}
    assert merge_patch_diff(before, after) == {
        "conditions": [{"type": "A"}, {"type": "B"}],
        "monitoring": {"b": None},
    }
    assert merge_patch_diff({}, {"startupInstance": "x"}) == {"startupInstance": "x"}
    assert merge_patch_diff({"gone": 1}, {}) == {"gone": None}


def test_get_custom_object(mock_apis):
    store, apis = mock_apis
    apis[client.CustomObjectsApi].get_namespaced_custom_object.return_value = {"metadata": {"name": "x"}}

    assert store.get("IvyUpgrade", "ns", "x") == {"metadata": {"name": "x"}}
    apis[client.CustomObjectsApi].get_namespaced_custom_object.assert_called_once_with(
        namespace="ns", name="x", group=CRD_GROUP, version=CRD_VERSION, plural="ivyupgrades"
    )


def test_list_built_in_kind_sets_kind_and_selector(mock_apis):
    store, apis = mock_apis
    apis[client.BatchV1Api].list_namespaced_job.return_value = {"items": [{"metadata": {"name": "j"}}]}

    items = store.list("Job", "ns", {"cluster": "hippo"})

    assert items == [{"metadata": {"name": "j"}, "kind": "Job", "apiVersion": "batch/v1"}]
    apis[client.BatchV1Api].list_namespaced_job.assert_called_once_with(
        namespace="ns", label_selector="cluster=hippo"
    )


def test_list_all_namespaces(mock_apis):
    store, apis = mock_apis
    apis[client.CustomObjectsApi].list_cluster_custom_object.return_value = {"items": []}
    apis[client.AppsV1Api].list_stateful_set_for_all_namespaces.return_value = {"items": []}

    assert store.list("IvoryCluster") == []
    assert store.list("StatefulSet") == []
    apis[client.CustomObjectsApi].list_cluster_custom_object.assert_called_once()
    apis[client.AppsV1Api].list_stateful_set_for_all_namespaces.assert_called_once_with()


def test_patch_status_uses_merge_patch(mock_apis):
    store, apis = mock_apis
    apis[client.CustomObjectsApi].patch_namespaced_custom_object_status.return_value = {}

    store.patch_status("IvoryCluster", "ns", "hippo", {"status": {"postgresVersion": 15}})

    kwargs = apis[client.CustomObjectsApi].patch_namespaced_custom_object_status.call_args.kwargs
    assert kwargs["_content_type"] == MERGE_PATCH
    assert kwargs["body"] == {"status": {"postgresVersion": 15}}
    assert kwargs["plural"] == "ivoryclusters"


def test_delete_sends_preconditions(mock_apis):
    store, apis = mock_apis

    store.delete("Job", "ns", "j", uid="u1", resource_version="7", propagation_policy="Background")

    kwargs = apis[client.BatchV1Api].delete_namespaced_job.call_args.kwargs
    options = kwargs["body"]
    assert options.preconditions.uid == "u1"
    assert options.preconditions.resource_version == "7"
    assert options.propagation_policy == "Background"


@pytest.mark.parametrize("status", [404, 409])
def test_delete_exactly_ignores_races(mock_apis, status):
    store, apis = mock_apis
    apis[client.CoreV1Api].delete_namespaced_endpoints.side_effect = client.ApiException(status=status)

    obj = {"kind": "Endpoints", "metadata": {"name": "e", "namespace": "ns", "uid": "u", "resourceVersion": "1"}}
    assert store.delete_exactly(obj) is False


def test_delete_exactly_raises_other_errors(mock_apis):
    store, apis = mock_apis
    apis[client.CoreV1Api].delete_namespaced_endpoints.side_effect = client.ApiException(status=500)

    obj = {"kind": "Endpoints", "metadata": {"name": "e", "namespace": "ns"}}
    with pytest.raises(client.ApiException):
        store.delete_exactly(obj)


def _config_map(data):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "cm", "namespace": "ns"},
        "data": data,
    }


def test_apply_creates_when_missing(mock_apis):
    store, apis = mock_apis
    core = apis[client.CoreV1Api]
    core.read_namespaced_config_map.side_effect = client.ApiException(status=404)
    core.create_namespaced_config_map.return_value = {"created": True}

    assert store.apply(_config_map({"a": "1"})) == {"created": True}
    core.create_namespaced_config_map.assert_called_once()
    core.patch_namespaced_config_map.assert_not_called()


def test_apply_skips_patch_when_live_object_matches(mock_apis):
    store, apis = mock_apis
    core = apis[client.CoreV1Api]
    live = _config_map({"a": "1"})
    live["metadata"]["resourceVersion"] = "5"
    core.read_namespaced_config_map.return_value = live

    assert store.apply(_config_map({"a": "1"})) is live
    core.patch_namespaced_config_map.assert_not_called()


def test_apply_patches_when_different(mock_apis):
    store, apis = mock_apis
    core = apis[client.CoreV1Api]
    core.read_namespaced_config_map.return_value = _config_map({"a": "1"})
    core.patch_namespaced_config_map.return_value = {}

    store.apply(_config_map({"a": "2"}))

    kwargs = core.patch_namespaced_config_map.call_args.kwargs
    assert kwargs["body"] == {"metadata": {"name": "cm", "namespace": "ns"}, "data": {"a": "2"}}
    assert kwargs["_content_type"] == MERGE_PATCH


def test_typed_responses_are_converted():
    api_client = MagicMock(spec=client.ApiClient)
    api_client.sanitize_for_serialization.return_value = {"metadata": {"name": "p"}}
    store = KubeStore(create_operator_registry(), api_client=api_client)
    core = MagicMock()
    core.read_namespaced_pod.return_value = client.V1Pod()
    store._apis[client.CoreV1Api] = core

    assert store.get("Pod", "ns", "p") == {"metadata": {"name": "p"}}
