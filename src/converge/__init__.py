"""converge - declarative, idempotent multi-host configuration orchestration.

Describe the desired state of a fleet in YAML playbooks and let converge
bring every host in line, concurrently, changing only what differs.

Quick Start:
    from converge import PlaybookRunner, load_inventory, load_playbook

    runner = PlaybookRunner(load_inventory("hosts.yml"))
    report = await runner.run(load_playbook("site.yml"))
    print(report.to_json())
"""

__version__ = "0.1.0"

from converge.config import RunConfig, load_config
from converge.executor import PlaybookRunner
from converge.inventory import Inventory, load_inventory
from converge.playbook import Playbook, load_playbook, parse_playbook
from converge.report import RunReport
from converge.types import HostConfig, TaskResult, TaskStatus

__all__ = [
    "__version__",
    "HostConfig",
    "Inventory",
    "Playbook",
    "PlaybookRunner",
    "RunConfig",
    "RunReport",
    "TaskResult",
    "TaskStatus",
    "load_config",
    "load_inventory",
    "load_playbook",
    "parse_playbook",
]
