"""
mahber.context — Per-Process Service Context
=============================================

The stateful collaborators (rate gate cache, security monitor) are built
once per process and handed to request handlers and workers through a
:class:`ServiceContext` rather than living as module globals.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Engine

from mahber.config import MahberConfig
from mahber.engine.classifier import ClassifierRules
from mahber.services.gate import RateGate
from mahber.services.security_monitor import SecurityMonitor


@dataclass(slots=True)
class ServiceContext:
    engine: Engine
    config: MahberConfig
    gate: RateGate
    monitor: SecurityMonitor
    rules: ClassifierRules

    @property
    def youth_role(self) -> str:
        return self.config.youth_role_name


def build_context(engine: Engine, config: MahberConfig, *, warm: bool = True) -> ServiceContext:
    """Construct the services for *engine* and optionally rebuild monitor state."""
    monitor = SecurityMonitor()
    if warm:
        monitor.rebuild(engine)
    return ServiceContext(
        engine=engine,
        config=config,
        gate=RateGate(config.rate),
        monitor=monitor,
        rules=ClassifierRules.from_config(config.moderation),
    )
