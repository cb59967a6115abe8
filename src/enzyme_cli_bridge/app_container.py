import logging
from pathlib import Path
from typing import Optional, Union

from enzyme_cli_bridge.config import Settings, load_settings
from enzyme_cli_bridge.domain.contracts import WorkspaceRootProvider
from enzyme_cli_bridge.execution.process_manager import ProcessManager
from enzyme_cli_bridge.execution.termination import TerminationPolicy
from enzyme_cli_bridge.providers.enzyme_cli import EnzymeCliProvider
from enzyme_cli_bridge.providers.registry_client import NpmRegistryClient
from enzyme_cli_bridge.services.cli_detector import CliDetector


logger = logging.getLogger(__name__)


def build_cli_provider(
    settings: Optional[Settings] = None,
    workspace_root: Union[None, str, Path, WorkspaceRootProvider] = None,
) -> EnzymeCliProvider:
    resolved = settings or load_settings()
    root = workspace_root if workspace_root is not None else resolved.workspace_root
    engine = ProcessManager(
        workspace_root=root,
        terminator=TerminationPolicy(grace_sec=resolved.terminate_grace_sec),
    )
    detector = CliDetector(engine=engine, workspace_root=root, settings=resolved)
    logger.info(
        "Enzyme CLI bridge ready (tool=%s, package=%s, workspace=%s).",
        resolved.tool_name,
        resolved.package_name,
        "<dynamic>" if callable(root) else root,
    )
    return EnzymeCliProvider(
        detector=detector,
        engine=engine,
        settings=resolved,
        registry=NpmRegistryClient(base_url=resolved.registry_url),
    )
