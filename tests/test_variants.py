"""Tests for the command variant table."""

import pytest

from device_harness import orchestrator as steps
from device_harness.variants import VARIANTS, create_orchestrator


class TestVariants:
    def test_all_variants_present(self):
        assert set(VARIANTS) == {
            "install",
            "uninstall",
            "run",
            "just-run",
            "test",
            "just-test",
            "reset-simulator",
        }

    def test_just_variants_skip_install_and_uninstall(self):
        for name in ("just-run", "just-test"):
            variant = VARIANTS[name]
            assert variant.prepare is steps.skip
            assert variant.install is steps.skip
            assert variant.uninstall is steps.skip

    def test_full_variants_reinstall_and_clean_up(self):
        for name, execute in (("run", steps.run_app), ("test", steps.run_test_app)):
            variant = VARIANTS[name]
            assert variant.reset is steps.reset_device
            assert variant.prepare is steps.uninstall_first
            assert variant.install is steps.install_app
            assert variant.execute is execute
            assert variant.uninstall is steps.uninstall_app
            assert variant.cleanup is steps.cleanup_devices

    def test_unknown_variant(self):
        with pytest.raises(ValueError):
            create_orchestrator("deploy", platform=None)

    def test_create_orchestrator_uses_variant(self, harness_config):
        orchestrator = create_orchestrator("uninstall", None, harness_config)

        assert orchestrator.steps is VARIANTS["uninstall"]
        assert orchestrator.config is harness_config
