import threading
import time

import pytest

from fake_cluster import FakeClock, FakeCluster

from errors import PrerequisiteError
from models import Prerequisite
from prerequisites import PrerequisiteInstaller, versions_match


CERT_MANAGER = Prerequisite(name="cert-manager", namespace="cert-manager", chart="cert-manager", version="v1.13.0")
INGRESS = Prerequisite(name="ingress-nginx", namespace="ingress-nginx", chart="ingress-nginx")


def test_missing_prerequisites_are_installed_once():
    cluster = FakeCluster()
    installer = PrerequisiteInstaller(cluster, sleep=FakeClock().sleep)

    first = installer.ensure([INGRESS, CERT_MANAGER])
    second = installer.ensure([INGRESS, CERT_MANAGER])

    assert [item["action"] for item in first] == ["installed", "installed"]
    assert [item["action"] for item in second] == ["present", "present"]
    assert sorted(cluster.install_calls) == ["cert-manager", "ingress-nginx"]
    assert first[1]["version"] == "v1.13.0"


def test_wrong_version_is_upgraded():
    cluster = FakeCluster()
    cluster.installed["cert-manager"] = "v1.12.0"
    installer = PrerequisiteInstaller(cluster, sleep=FakeClock().sleep)

    result = installer.ensure([CERT_MANAGER])

    assert result == [{"name": "cert-manager", "version": "v1.13.0", "action": "installed"}]
    assert cluster.install_calls == ["cert-manager"]


def test_verification_retries_with_backoff():
    cluster = FakeCluster()
    clock = FakeClock()
    checks = {"count": 0}
    original = cluster.prerequisite_version

    def slow_version(prerequisite, timeout=None):
        checks["count"] += 1
        # The release only shows up on the fourth read: two presence checks and one verify miss.
        if checks["count"] < 4:
            return None
        return original(prerequisite, timeout)

    cluster.prerequisite_version = slow_version
    installer = PrerequisiteInstaller(cluster, verify_attempts=3, verify_base_seconds=2, sleep=clock.sleep)

    result = installer.ensure([CERT_MANAGER])

    assert result[0]["action"] == "installed"
    assert clock.sleeps == [2]


def test_verification_gives_up_after_attempts():
    cluster = FakeCluster()
    clock = FakeClock()
    cluster.prerequisite_version = lambda prerequisite, timeout=None: None
    installer = PrerequisiteInstaller(cluster, verify_attempts=3, verify_base_seconds=1, sleep=clock.sleep)

    with pytest.raises(PrerequisiteError) as excinfo:
        installer.ensure([CERT_MANAGER])

    assert excinfo.value.name == "cert-manager"
    assert clock.sleeps == [1, 2]


def test_install_failure_names_the_add_on():
    cluster = FakeCluster()
    cluster.install_failures["ingress-nginx"] = "Error: repo ingress-nginx not found"
    installer = PrerequisiteInstaller(cluster, sleep=FakeClock().sleep)

    with pytest.raises(PrerequisiteError) as excinfo:
        installer.ensure([CERT_MANAGER, INGRESS])

    assert excinfo.value.name == "ingress-nginx"
    assert "not found" in excinfo.value.cause


def test_concurrent_releases_install_each_add_on_once():
    cluster = FakeCluster()
    cluster.install_hook = lambda prerequisite: time.sleep(0.05)
    installer = PrerequisiteInstaller(cluster, sleep=FakeClock().sleep)
    results = []

    def run():
        results.append(installer.ensure([CERT_MANAGER]))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert cluster.install_calls == ["cert-manager"]
    assert len(results) == 4
    assert sorted(result[0]["action"] for result in results) == ["installed", "present", "present", "present"]


def test_version_comparison_ignores_v_prefix():
    assert versions_match("1.13.0", "v1.13.0")
    assert versions_match("v4.8.3", None)
    assert not versions_match(None, None)
    assert not versions_match("1.12.0", "v1.13.0")
