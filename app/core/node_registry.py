"""Node registry mapping (category, subtype) pairs to node executors."""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..models.core import NodeCategory, NodeExecutionResult
from .cancellation import CancellationToken
from .exceptions import NodeRegistryError, UnknownNodeTypeError
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class NodeExecutionContext:
    """Everything a node executor can see during one attempt."""
    node_id: str
    workflow_id: str
    run_id: str
    config: Dict[str, Any]
    input: Any = field(default_factory=dict)
    previous_nodes: List[str] = field(default_factory=list)
    cancellation: CancellationToken = field(default_factory=CancellationToken)


class NodeExecutor(ABC):
    """Contract every node type implements.

    Subclasses set ``category`` and ``subtype`` and implement ``validate`` and
    ``execute``. ``validate`` must collect every violated rule rather than stop
    at the first one. ``execute`` must observe ``context.cancellation`` at its
    suspension points.
    """

    category: NodeCategory
    subtype: str
    label: str = ""
    description: str = ""

    def validate(self, config: Dict[str, Any]) -> List[str]:
        """Return the list of violated configuration rules (empty when valid)."""
        return []

    @abstractmethod
    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        """Run the node once."""

    @property
    def node_type(self) -> str:
        return f"{self.category.value}/{self.subtype}"


class NodeRegistry:
    """Closed dispatch table of node executors.

    The registry is populated once at startup and then sealed; after sealing
    no executor can be added, so the set of runnable node types is fixed for
    the lifetime of the process.
    """

    def __init__(self):
        self._executors: Dict[Tuple[NodeCategory, str], NodeExecutor] = {}
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(self, executor: NodeExecutor) -> None:
        """Register an executor under its (category, subtype) pair.

        Args:
            executor: Executor instance to register

        Raises:
            NodeRegistryError: If the registry is sealed, the executor is malformed,
                or the pair is already registered
        """
        if self._sealed:
            raise NodeRegistryError(
                "Node registry is sealed", node_type=getattr(executor, "subtype", None), operation="register"
            )

        if not isinstance(executor, NodeExecutor):
            raise NodeRegistryError(f"{executor!r} is not a NodeExecutor", operation="register")

        subtype = (getattr(executor, "subtype", "") or "").strip()
        category = getattr(executor, "category", None)
        if not subtype or category is None:
            raise NodeRegistryError(
                f"Executor {type(executor).__name__} must define category and subtype", operation="register"
            )

        key = (NodeCategory(category), subtype)
        if key in self._executors:
            raise NodeRegistryError(
                f"Node type '{key[0].value}/{subtype}' is already registered",
                node_type=f"{key[0].value}/{subtype}",
                operation="register"
            )

        self._executors[key] = executor
        logger.debug(f"Registered node executor {type(executor).__name__} for {key[0].value}/{subtype}")

    def seal(self) -> None:
        self._sealed = True
        logger.info(f"Node registry sealed with {len(self._executors)} node types")

    def get_executor(self, category: Any, subtype: str) -> NodeExecutor:
        """Look up the executor for a node type.

        Raises:
            UnknownNodeTypeError: If no executor is registered for the pair
        """
        category_value = category.value if isinstance(category, NodeCategory) else str(category)
        try:
            key = (NodeCategory(category_value), subtype)
        except ValueError:
            raise UnknownNodeTypeError(category_value, subtype)

        executor = self._executors.get(key)
        if executor is None:
            raise UnknownNodeTypeError(category_value, subtype)
        return executor

    def has_node_type(self, category: Any, subtype: str) -> bool:
        try:
            self.get_executor(category, subtype)
            return True
        except UnknownNodeTypeError:
            return False

    def list_node_types(self) -> List[Dict[str, str]]:
        """Describe every registered node type, ordered by category then subtype."""
        return [
            {
                "category": category.value,
                "subtype": subtype,
                "label": executor.label or subtype,
                "description": executor.description,
            }
            for (category, subtype), executor in sorted(
                self._executors.items(), key=lambda item: (item[0][0].value, item[0][1])
            )
        ]

    def __len__(self) -> int:
        return len(self._executors)


def isolate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Give an executor a private copy of a node configuration."""
    return copy.deepcopy(config or {})
