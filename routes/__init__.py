"""
API Routes - Shared dependencies

server.py builds the service objects once and registers them here; route
modules read them through get_deps().
"""

from dataclasses import dataclass
from typing import Optional

from capture_orchestrator import CaptureOrchestrator
from capture_service import CaptureService
from settings_manager import SettingsManager


@dataclass
class RouteDependencies:
    capture_service: Optional[CaptureService] = None
    orchestrator: Optional[CaptureOrchestrator] = None
    settings_manager: Optional[SettingsManager] = None
    version: str = "0.1.0"


_deps = RouteDependencies()


def set_dependencies(deps: RouteDependencies):
    global _deps
    _deps = deps


def get_deps() -> RouteDependencies:
    return _deps
