"""
Resource graph for a single-host deployment.

Nodes are plain dataclasses that refer to each other through typed fields.
Each node reports its references as typed edges, and `ResourceGraph.declare`
refuses a node whose edge targets have not been declared yet. Declaration
order is therefore always a valid creation order, and the realizer walks
`topological_order()` without any scheduling logic of its own.

Example::

    graph = ResourceGraph()
    network = graph.declare(Network("network"))
    firewall = graph.declare(FirewallPolicy("firewall", network))
    firewall.allow("tcp", 3000, description="Allow HTTP traffic on port 3000")
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import pulumi

from bootstrap import BootstrapLayout, BootstrapSequence, default_sequence
from config import DeploymentConfig
from grants import EC2_SERVICE_PRINCIPAL, SSM_MANAGED_POLICY

ANY_IPV4 = "0.0.0.0/0"

# edge kinds
ATTACH = "attach"
GRANT = "grant"
ASSUME = "assume"
EMBED = "embed"
PUBLISH = "publish"

class GraphError(ValueError):
    """Raised when the resource graph cannot be constructed."""

@dataclass(frozen=True)
class Edge:
    source: "Node"
    target: "Node"
    kind: str

@dataclass(eq=False)
class Node:
    name: str

    @property
    def kind(self) -> str:
        return type(self).__name__

    def dependencies(self) -> List[Edge]:
        return []

    def validate(self) -> None:
        pass

@dataclass(eq=False)
class Network(Node):
    cidr: str = "10.0.0.0/16"
    az_count: int = 2
    nat_gateways: int = 0
    subnet_prefix: int = 24

    def subnet_cidrs(self) -> List[str]:
        """One public subnet per availability zone, carved from the start of the range."""
        subnets = ipaddress.ip_network(self.cidr).subnets(new_prefix=self.subnet_prefix)
        cidrs = []
        for _ in range(self.az_count):
            try:
                cidrs.append(str(next(subnets)))
            except StopIteration:
                raise GraphError(f"Network '{self.name}' range {self.cidr} cannot hold {self.az_count} subnets") from None
        return cidrs

    def validate(self) -> None:
        if self.az_count < 1:
            raise GraphError(f"Network '{self.name}' needs at least one subnet")
        if self.nat_gateways != 0:
            # instances sit in public subnets and reach the internet directly
            raise GraphError(f"Network '{self.name}' is public-only; NAT gateways are not supported")
        self.subnet_cidrs()

@dataclass(frozen=True)
class IngressRule:
    protocol: str
    port: int
    source: str = ANY_IPV4
    description: str = ""

    def key(self):
        return (self.protocol, self.port, self.source)

@dataclass(eq=False)
class FirewallPolicy(Node):
    network: Optional[Network] = None
    description: str = ""
    rules: List[IngressRule] = field(default_factory=list)
    allow_all_outbound: bool = True

    def allow(self, protocol: str, port: int, source: str = ANY_IPV4, description: str = "") -> IngressRule:
        rule = IngressRule(protocol.lower(), int(port), source, description)
        if any(existing.key() == rule.key() for existing in self.rules):
            raise GraphError(f"Duplicate ingress rule {rule.key()} on '{self.name}'")
        if not 0 < rule.port < 65536:
            raise GraphError(f"Invalid port {rule.port} on '{self.name}'")
        self.rules.append(rule)
        return rule

    def allows(self, port: int, protocol: str = "tcp", source: str = ANY_IPV4) -> bool:
        return any(rule.key() == (protocol, port, source) for rule in self.rules)

    def dependencies(self) -> List[Edge]:
        return [Edge(self, self.network, ATTACH)]

    def validate(self) -> None:
        if self.network is None:
            raise GraphError(f"FirewallPolicy '{self.name}' is not bound to a network")

@dataclass(eq=False)
class ArtifactStore(Node):
    removal_policy: str = "destroy"
    auto_empty: bool = True
    public_access: bool = False

    def validate(self) -> None:
        if self.public_access:
            raise GraphError(f"ArtifactStore '{self.name}' must not allow public access")
        if self.auto_empty and self.removal_policy != "destroy":
            raise GraphError(f"ArtifactStore '{self.name}' can only auto-empty when destroyed with the deployment")

@dataclass(eq=False)
class InstanceIdentity(Node):
    service_principal: str = EC2_SERVICE_PRINCIPAL
    managed_policies: List[str] = field(default_factory=lambda: [SSM_MANAGED_POLICY])
    read_grants: List[ArtifactStore] = field(default_factory=list)
    attached: bool = field(default=False, repr=False)

    def grant_read(self, store: ArtifactStore) -> None:
        if self.attached:
            raise GraphError(f"InstanceIdentity '{self.name}' is already attached to an instance")
        if store not in self.read_grants:
            self.read_grants.append(store)

    def dependencies(self) -> List[Edge]:
        return [Edge(self, store, GRANT) for store in self.read_grants]

@dataclass(eq=False)
class Instance(Node):
    network: Optional[Network] = None
    firewall: Optional[FirewallPolicy] = None
    identity: Optional[InstanceIdentity] = None
    store: Optional[ArtifactStore] = None
    bootstrap: Optional[BootstrapSequence] = None
    instance_type: str = "t3.micro"
    image_parameter: str = ""
    service_port: int = 3000
    subnet_index: int = 0

    def dependencies(self) -> List[Edge]:
        return [
            Edge(self, self.network, ATTACH),
            Edge(self, self.firewall, ATTACH),
            Edge(self, self.identity, ASSUME),
            Edge(self, self.store, EMBED),
        ]

    def validate(self) -> None:
        for attr in ("network", "firewall", "identity", "store", "bootstrap"):
            if getattr(self, attr) is None:
                raise GraphError(f"Instance '{self.name}' is missing its {attr}")
        if self.firewall.network is not self.network:
            raise GraphError(f"Instance '{self.name}' firewall belongs to a different network")
        if not self.firewall.allows(self.service_port):
            raise GraphError(f"Instance '{self.name}' service port {self.service_port} is not allowed by '{self.firewall.name}'")
        if self.store not in self.identity.read_grants:
            raise GraphError(f"Instance '{self.name}' identity cannot read '{self.store.name}'")
        if not 0 <= self.subnet_index < self.network.az_count:
            raise GraphError(f"Instance '{self.name}' subnet index {self.subnet_index} is out of range")

@dataclass(eq=False)
class Outputs(Node):
    instance: Optional[Instance] = None
    store: Optional[ArtifactStore] = None

    def dependencies(self) -> List[Edge]:
        return [Edge(self, self.instance, PUBLISH), Edge(self, self.store, PUBLISH)]

class ResourceGraph:
    def __init__(self):
        self.nodes: Dict[str, Node] = {}

    def __contains__(self, node: Node) -> bool:
        return self.nodes.get(node.name) is node

    def declare(self, node: Node) -> Node:
        if node.name in self.nodes:
            raise GraphError(f"Resource '{node.name}' is already declared")
        for edge in node.dependencies():
            if edge.target is None:
                raise GraphError(f"Resource '{node.name}' has an empty {edge.kind} reference")
            if edge.target not in self:
                raise GraphError(
                    f"Resource '{node.name}' references undeclared resource '{edge.target.name}' ({edge.kind})"
                )
        node.validate()
        if isinstance(node, Instance):
            # exactly one instance per deployment; an identity serves one instance
            if any(isinstance(existing, Instance) for existing in self.nodes.values()):
                raise GraphError(f"Resource '{node.name}' would be a second Instance; only one is allowed")
            if node.identity.attached:
                raise GraphError(f"InstanceIdentity '{node.identity.name}' is already attached to an instance")
            node.identity.attached = True
        self.nodes[node.name] = node
        pulumi.log.debug(f"Declared {node.kind} '{node.name}'")
        return node

    def get(self, name: str) -> Node:
        if name not in self.nodes:
            raise GraphError(f"Resource '{name}' is not declared")
        return self.nodes[name]

    def edges(self) -> List[Edge]:
        return [edge for node in self.nodes.values() for edge in node.dependencies()]

    def topological_order(self) -> List[Node]:
        """Creation order; ties keep declaration order."""
        pending = {name: set() for name in self.nodes}
        for edge in self.edges():
            if edge.target not in self:
                raise GraphError(f"Edge from '{edge.source.name}' to undeclared '{edge.target.name}'")
            pending[edge.source.name].add(edge.target.name)

        order: List[Node] = []
        done: Set[str] = set()
        while len(order) < len(self.nodes):
            ready = [name for name, deps in pending.items() if name not in done and deps <= done]
            if not ready:
                raise GraphError("Resource graph contains a cycle")
            for name in ready:
                done.add(name)
                order.append(self.nodes[name])
        return order

    def closure(self, node: Node) -> Set[str]:
        """Names of every resource the node depends on, directly or transitively."""
        seen: Set[str] = set()
        to_visit = [edge.target for edge in node.dependencies()]
        while to_visit:
            current = to_visit.pop()
            if current.name in seen:
                continue
            seen.add(current.name)
            to_visit.extend(edge.target for edge in current.dependencies())
        return seen

    def describe(self) -> Dict[str, Any]:
        return {
            "resources": [
                {
                    "name": node.name,
                    "kind": node.kind,
                    "depends_on": [
                        {"name": edge.target.name, "edge": edge.kind} for edge in node.dependencies()
                    ],
                }
                for node in self.topological_order()
            ],
        }

def build_graph(config: DeploymentConfig) -> ResourceGraph:
    """Declare the full single-host deployment in dependency order."""
    app = config.application
    graph = ResourceGraph()

    network = graph.declare(Network(
        "network",
        cidr=config.network.cidr,
        az_count=config.network.az_count,
        subnet_prefix=config.network.subnet_prefix,
    ))

    firewall = FirewallPolicy(
        "firewall",
        network=network,
        description=f"Security group for {app.description}",
    )
    firewall.allow("tcp", app.port, description=f"Allow HTTP traffic on port {app.port}")
    firewall.allow("tcp", app.admin_port, description="Allow SSH access")
    graph.declare(firewall)

    store = graph.declare(ArtifactStore("artifacts"))

    identity = InstanceIdentity("instance-role")
    identity.grant_read(store)
    graph.declare(identity)

    layout = BootstrapLayout(
        user=app.user,
        home=f"/home/{app.user}",
        service_name=app.name,
        binary_name=app.name,
    )
    instance = graph.declare(Instance(
        "instance",
        network=network,
        firewall=firewall,
        identity=identity,
        store=store,
        bootstrap=default_sequence(
            layout,
            description=app.description,
            restart_sec=app.restart_sec,
            start_now=app.start_on_first_boot,
        ),
        instance_type=config.instance.instance_type,
        image_parameter=config.instance.image_parameter,
        service_port=app.port,
    ))

    graph.declare(Outputs("outputs", instance=instance, store=store))
    return graph
