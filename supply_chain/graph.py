"""Supply chain topology: nodes, directed edges and the finalization gate."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from .config import NodeDeletionPolicy, Settings, get_settings
from .domain import (
    AssignedUser,
    ChainStatus,
    GraphEdge,
    GraphNode,
    NodeRole,
    NodeStatus,
    OrderStatus,
    RequestStatus,
    SupplyChain,
    TransportStatus,
    parse_status,
    utcnow,
)
from .errors import (
    ChainFinalizedError,
    InvalidArgumentError,
    InvalidTopologyError,
    NodeHasDependenciesError,
    NotFoundError,
)
from .logging_config import get_logger
from .repository import RecordNotFoundError

logger = get_logger("graph")

PARTY_ROLES = frozenset(
    {NodeRole.SUPPLIER, NodeRole.MANUFACTURER, NodeRole.DISTRIBUTOR, NodeRole.CUSTOMER}
)
# Nodes a flow may pass through without breaking supplier/manufacturer adjacency.
PASS_THROUGH_ROLES = frozenset({NodeRole.WAREHOUSE, NodeRole.QA})

_TERMINAL_REQUEST = frozenset({RequestStatus.DELIVERED, RequestStatus.REJECTED})
_TERMINAL_ORDER = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})
_TERMINAL_TRANSPORT = frozenset(
    {TransportStatus.DELIVERED, TransportStatus.CONFIRMED, TransportStatus.CANCELLED}
)


@dataclass(slots=True)
class NodeDependencyReport:
    """Outcome of a node dependency check."""

    node_id: str
    dependents: Dict[str, int] = field(default_factory=dict)
    blocking: Dict[str, int] = field(default_factory=dict)
    edge_count: int = 0

    @property
    def can_delete(self) -> bool:
        return not self.blocking

    @property
    def message(self) -> str:
        if not self.blocking:
            if self.edge_count:
                return "This node has connections that will also be deleted."
            return ""
        kinds = ", ".join(sorted(self.blocking))
        return (
            f"This node has associated {kinds} and cannot be deleted. "
            "Deleting this node may cause data inconsistency."
        )


class GraphRegistry:
    """Registry of supply chains and their node/edge topology."""

    def __init__(self, database: Any, *, settings: Optional[Settings] = None) -> None:
        self._db = database
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------
    def create_chain(self, name: str, created_by: str) -> SupplyChain:
        if not name.strip():
            raise InvalidArgumentError("A supply chain needs a name")
        chain = SupplyChain(id=str(uuid4()), name=name.strip(), created_by=created_by)
        self._db.supply_chains.add(chain.id, chain)
        logger.info("chain_created", extra={"chain_id": chain.id, "created_by": created_by})
        return chain

    def get_chain(self, chain_id: str) -> SupplyChain:
        try:
            return self._db.supply_chains.get(chain_id)
        except RecordNotFoundError as exc:
            raise NotFoundError(f"Supply chain {chain_id!r} not found", chain_id=chain_id) from exc

    def list_chains(self) -> List[SupplyChain]:
        return self._db.supply_chains.list()

    def chains_for_user(self, user_id: str) -> List[SupplyChain]:
        return [
            chain
            for chain in self._db.supply_chains.list()
            if chain.created_by == user_id
            or any(node.assigned_user_id == user_id for node in chain.nodes.values())
        ]

    def finalize(self, chain_id: str) -> SupplyChain:
        """Lock the topology. Happens once; replaying returns the chain unchanged."""

        with self._db.transaction():
            chain = self.get_chain(chain_id)
            if chain.blockchain_status != ChainStatus.DRAFT:
                return chain
            if not chain.nodes:
                raise InvalidTopologyError(
                    f"Supply chain {chain_id!r} has no nodes and cannot be finalized"
                )
            unassigned = [
                node.id
                for node in chain.nodes.values()
                if node.role in PARTY_ROLES and not node.assigned_user_id
            ]
            if unassigned:
                raise InvalidTopologyError(
                    f"Supply chain {chain_id!r} has party nodes without a user",
                    node_ids=unassigned,
                )
            chain.blockchain_status = ChainStatus.FINALIZED
            chain.finalized_at = utcnow()
            for node in chain.nodes.values():
                if node.status == NodeStatus.PENDING and node.assigned_user_id:
                    node.status = NodeStatus.ACTIVE
            self._db.supply_chains.update(chain.id, chain)
        logger.info("chain_finalized", extra={"chain_id": chain_id})
        return chain

    def confirm(self, chain_id: str) -> SupplyChain:
        """Administrative promotion FINALIZED -> CONFIRMED."""

        with self._db.transaction():
            chain = self.get_chain(chain_id)
            if chain.blockchain_status == ChainStatus.CONFIRMED:
                return chain
            if chain.blockchain_status != ChainStatus.FINALIZED:
                raise InvalidTopologyError(
                    f"Supply chain {chain_id!r} must be finalized before confirmation"
                )
            chain.blockchain_status = ChainStatus.CONFIRMED
            chain.confirmed_at = utcnow()
            self._db.supply_chains.update(chain.id, chain)
        logger.info("chain_confirmed", extra={"chain_id": chain_id})
        return chain

    def require_operational(self, chain_id: str) -> SupplyChain:
        chain = self.get_chain(chain_id)
        if not chain.is_operational:
            raise InvalidTopologyError(
                f"Supply chain {chain_id!r} is {chain.blockchain_status.value}; "
                "operational entities need a finalized chain",
                chain_id=chain_id,
            )
        return chain

    # ------------------------------------------------------------------
    # Nodes and edges
    # ------------------------------------------------------------------
    def _require_draft(self, chain: SupplyChain) -> None:
        if chain.blockchain_status != ChainStatus.DRAFT:
            raise ChainFinalizedError(
                f"Supply chain {chain.id!r} is {chain.blockchain_status.value} "
                "and its structure can no longer change",
                chain_id=chain.id,
            )

    @staticmethod
    def _node(chain: SupplyChain, node_id: str) -> GraphNode:
        node = chain.nodes.get(node_id)
        if node is None:
            raise NotFoundError(
                f"Node {node_id!r} not found in supply chain {chain.id!r}", node_id=node_id
            )
        return node

    def get_node(self, chain_id: str, node_id: str) -> GraphNode:
        return self._node(self.get_chain(chain_id), node_id)

    def add_node(
        self,
        chain_id: str,
        role: NodeRole | str,
        position: Tuple[float, float] = (0.0, 0.0),
        *,
        assigned_user_id: Optional[str] = None,
        label: str = "",
    ) -> GraphNode:
        role = parse_status(NodeRole, role)
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            self._require_draft(chain)
            node = GraphNode(
                id=str(uuid4()),
                supply_chain_id=chain.id,
                role=role,
                assigned_user_id=assigned_user_id,
                label=label or role.value,
                position=(float(position[0]), float(position[1])),
            )
            chain.nodes[node.id] = node
            self._db.supply_chains.update(chain.id, chain)
        logger.info(
            "node_added",
            extra={"chain_id": chain_id, "node_id": node.id, "role": role.value},
        )
        return node

    def update_node(
        self,
        chain_id: str,
        node_id: str,
        *,
        role: Optional[NodeRole | str] = None,
        assigned_user_id: Optional[str] = None,
        label: Optional[str] = None,
        position: Optional[Tuple[float, float]] = None,
    ) -> GraphNode:
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            node = self._node(chain, node_id)
            new_role = parse_status(NodeRole, role) if role is not None else node.role
            identity_changes = new_role != node.role or (
                assigned_user_id is not None and assigned_user_id != node.assigned_user_id
            )
            if identity_changes:
                report = self._dependency_report(chain, node)
                if not report.can_delete:
                    raise NodeHasDependenciesError(
                        f"Node {node_id!r} has dependents; its role and user are fixed",
                        node_id=node_id,
                        dependents=report.blocking,
                    )
            self._require_draft(chain)
            node.role = new_role
            if assigned_user_id is not None:
                node.assigned_user_id = assigned_user_id or None
            if label is not None:
                node.label = label
            if position is not None:
                node.position = (float(position[0]), float(position[1]))
            self._db.supply_chains.update(chain.id, chain)
            return node

    def update_node_status(
        self, chain_id: str, node_id: str, status: NodeStatus | str
    ) -> GraphNode:
        """Display status may change at any time; it is not structure."""

        status = parse_status(NodeStatus, status)
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            node = self._node(chain, node_id)
            if node.status == status:
                return node
            node.status = status
            self._db.supply_chains.update(chain.id, chain)
            return node

    def add_edge(self, chain_id: str, source_id: str, target_id: str) -> GraphEdge:
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            self._require_draft(chain)
            for node_id in (source_id, target_id):
                if node_id not in chain.nodes:
                    raise InvalidTopologyError(
                        f"Node {node_id!r} does not belong to supply chain {chain_id!r}",
                        node_id=node_id,
                    )
            if source_id == target_id:
                raise InvalidTopologyError("An edge cannot connect a node to itself")
            for edge in chain.edges.values():
                if edge.source_node_id == source_id and edge.target_node_id == target_id:
                    return edge
            edge = GraphEdge(
                id=str(uuid4()),
                supply_chain_id=chain.id,
                source_node_id=source_id,
                target_node_id=target_id,
            )
            chain.edges[edge.id] = edge
            self._db.supply_chains.update(chain.id, chain)
        logger.info(
            "edge_added",
            extra={"chain_id": chain_id, "source_node_id": source_id, "target_node_id": target_id},
        )
        return edge

    def delete_edge(self, chain_id: str, edge_id: str) -> None:
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            self._require_draft(chain)
            if edge_id not in chain.edges:
                raise NotFoundError(f"Edge {edge_id!r} not found", edge_id=edge_id)
            del chain.edges[edge_id]
            self._db.supply_chains.update(chain.id, chain)

    def delete_node(self, chain_id: str, node_id: str, *, as_admin: bool = False) -> None:
        """Remove a node and its edges.

        The dependency check runs first, inside the same transaction as the
        delete. Structural edits to a finalized chain are refused unless
        ``as_admin`` is set, and even then only for nodes that pass the
        dependency check under the configured deletion policy.
        """

        with self._db.transaction():
            chain = self.get_chain(chain_id)
            node = self._node(chain, node_id)
            report = self._dependency_report(chain, node)
            if not report.can_delete:
                raise NodeHasDependenciesError(
                    report.message, node_id=node_id, dependents=report.blocking
                )
            if not as_admin:
                self._require_draft(chain)
            del chain.nodes[node_id]
            for edge_id in [
                edge.id
                for edge in chain.edges.values()
                if node_id in (edge.source_node_id, edge.target_node_id)
            ]:
                del chain.edges[edge_id]
            self._db.supply_chains.update(chain.id, chain)
        logger.info(
            "node_deleted",
            extra={"chain_id": chain_id, "node_id": node_id, "as_admin": as_admin},
        )

    def check_node_dependencies(self, chain_id: str, node_id: str) -> NodeDependencyReport:
        with self._db.transaction():
            chain = self.get_chain(chain_id)
            return self._dependency_report(chain, self._node(chain, node_id))

    def _dependency_report(self, chain: SupplyChain, node: GraphNode) -> NodeDependencyReport:
        """Count entities that reference ``node`` or its user in this chain.

        Must run inside the caller's transaction so no dependent can appear
        between the check and the write that relies on it.
        """

        allow_terminal = (
            self.settings.node_deletion_policy == NodeDeletionPolicy.ALLOW_TERMINAL
        )
        user_id = node.assigned_user_id
        report = NodeDependencyReport(
            node_id=node.id,
            edge_count=sum(
                1
                for edge in chain.edges.values()
                if node.id in (edge.source_node_id, edge.target_node_id)
            ),
        )

        def note(kind: str, terminal: bool) -> None:
            report.dependents[kind] = report.dependents.get(kind, 0) + 1
            if not (allow_terminal and terminal):
                report.blocking[kind] = report.blocking.get(kind, 0) + 1

        in_chain = chain.id
        if user_id:
            for item in self._db.ledger_items.find(
                lambda item: item.supply_chain_id == in_chain and item.owner_id == user_id
            ):
                note("ledger items", not item.is_active)
            for request in self._db.material_requests.find(
                lambda request: request.supply_chain_id == in_chain
                and user_id in (request.supplier_id, request.manufacturer_id)
            ):
                note("material requests", request.status in _TERMINAL_REQUEST)
            for order in self._db.orders.find(
                lambda order: order.supply_chain_id == in_chain
                and user_id in (order.customer_id, order.manufacturer_id, order.distributor_id)
            ):
                note("orders", order.status in _TERMINAL_ORDER)
            for material in self._db.materials.find(
                lambda material: material.supply_chain_id == in_chain
                and material.supplier_id == user_id
            ):
                note("materials", not material.is_active)
            for product in self._db.products.find(
                lambda product: product.supply_chain_id == in_chain
                and product.manufacturer_id == user_id
            ):
                note("products", not product.is_active)
        for transport in self._db.transports.find(
            lambda transport: transport.supply_chain_id == in_chain
            and (
                node.id in (transport.source_node_id, transport.destination_node_id)
                or (user_id is not None and transport.distributor_id == user_id)
            )
        ):
            note("transports", transport.status in _TERMINAL_TRANSPORT)
        return report

    # ------------------------------------------------------------------
    # Queries used by the engines
    # ------------------------------------------------------------------
    def get_assigned_users(
        self, chain_id: str, role: Optional[NodeRole | str] = None
    ) -> List[AssignedUser]:
        chain = self.get_chain(chain_id)
        wanted = parse_status(NodeRole, role) if role is not None else None
        return [
            AssignedUser(user_id=node.assigned_user_id, role=node.role, node_id=node.id)
            for node in chain.nodes.values()
            if node.assigned_user_id and (wanted is None or node.role == wanted)
        ]

    def nodes_for_user(
        self, chain: SupplyChain, user_id: str, role: Optional[NodeRole] = None
    ) -> List[GraphNode]:
        return [
            node
            for node in chain.nodes.values()
            if node.assigned_user_id == user_id and (role is None or node.role == role)
        ]

    def node_for_user(
        self, chain: SupplyChain, user_id: str, role: NodeRole
    ) -> GraphNode:
        nodes = self.nodes_for_user(chain, user_id, role)
        if not nodes:
            raise InvalidTopologyError(
                f"User {user_id!r} holds no {role.value} node in supply chain {chain.id!r}",
                user_id=user_id,
                role=role.value,
            )
        return nodes[0]

    def has_flow(
        self,
        chain: SupplyChain,
        source_user_id: str,
        source_role: NodeRole,
        target_user_id: str,
        target_role: NodeRole,
    ) -> bool:
        """Whether material can flow from one party to the other.

        Either a direct edge or a path through warehouse/QA nodes counts.
        """

        sources = {node.id for node in self.nodes_for_user(chain, source_user_id, source_role)}
        targets = {node.id for node in self.nodes_for_user(chain, target_user_id, target_role)}
        if not sources or not targets:
            return False
        adjacency: Dict[str, List[str]] = {}
        for edge in chain.edges.values():
            adjacency.setdefault(edge.source_node_id, []).append(edge.target_node_id)
        queue = deque(sources)
        visited = set(sources)
        while queue:
            current = queue.popleft()
            for successor in adjacency.get(current, ()):
                if successor in targets:
                    return True
                if successor in visited:
                    continue
                if chain.nodes[successor].role in PASS_THROUGH_ROLES:
                    visited.add(successor)
                    queue.append(successor)
        return False

    def require_flow(
        self,
        chain: SupplyChain,
        source_user_id: str,
        source_role: NodeRole,
        target_user_id: str,
        target_role: NodeRole,
    ) -> None:
        if not self.has_flow(chain, source_user_id, source_role, target_user_id, target_role):
            raise InvalidTopologyError(
                f"No {source_role.value} -> {target_role.value} flow from {source_user_id!r} "
                f"to {target_user_id!r} in supply chain {chain.id!r}",
                chain_id=chain.id,
            )

    def user_roles(self, chain: SupplyChain, user_id: str) -> Sequence[NodeRole]:
        return tuple(dict.fromkeys(node.role for node in self.nodes_for_user(chain, user_id)))


__all__ = ["GraphRegistry", "NodeDependencyReport", "PARTY_ROLES", "PASS_THROUGH_ROLES"]
