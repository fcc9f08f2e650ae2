"""Command variants as pure data over the orchestration steps."""

from typing import Dict, Optional

from .config import HarnessConfig
from .knowledge_base import ErrorKnowledgeBase
from .orchestrator import (
    OrchestrationSteps,
    Orchestrator,
    cleanup_devices,
    install_app,
    reset_device,
    reset_only,
    run_app,
    run_test_app,
    skip,
    uninstall_app,
    uninstall_first,
    uninstall_only,
)
from .platforms import TargetPlatform

VARIANTS: Dict[str, OrchestrationSteps] = {
    "install": OrchestrationSteps(
        name="install",
        reset=reset_device,
        prepare=uninstall_first,
        install=install_app,
        execute=skip,
        uninstall=skip,
        cleanup=skip,
    ),
    "uninstall": OrchestrationSteps(
        name="uninstall",
        reset=skip,
        prepare=skip,
        install=skip,
        execute=uninstall_only,
        uninstall=skip,
        cleanup=skip,
    ),
    "run": OrchestrationSteps(
        name="run",
        reset=reset_device,
        prepare=uninstall_first,
        install=install_app,
        execute=run_app,
        uninstall=uninstall_app,
        cleanup=cleanup_devices,
    ),
    "just-run": OrchestrationSteps(
        name="just-run",
        reset=skip,
        prepare=skip,
        install=skip,
        execute=run_app,
        uninstall=skip,
        cleanup=skip,
    ),
    "test": OrchestrationSteps(
        name="test",
        reset=reset_device,
        prepare=uninstall_first,
        install=install_app,
        execute=run_test_app,
        uninstall=uninstall_app,
        cleanup=cleanup_devices,
    ),
    "just-test": OrchestrationSteps(
        name="just-test",
        reset=skip,
        prepare=skip,
        install=skip,
        execute=run_test_app,
        uninstall=skip,
        cleanup=skip,
    ),
    "reset-simulator": OrchestrationSteps(
        name="reset-simulator",
        reset=skip,
        prepare=skip,
        install=skip,
        execute=reset_only,
        uninstall=skip,
        cleanup=skip,
        requires_app=False,
    ),
}


def create_orchestrator(
    variant: str,
    platform: TargetPlatform,
    config: Optional[HarnessConfig] = None,
    knowledge_base: Optional[ErrorKnowledgeBase] = None,
) -> Orchestrator:
    if variant not in VARIANTS:
        raise ValueError(
            f"Unknown variant '{variant}', expected one of: {', '.join(VARIANTS)}"
        )
    return Orchestrator(platform, VARIANTS[variant], config, knowledge_base)
