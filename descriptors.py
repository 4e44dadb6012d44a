"""
Immutable resource descriptors for the SonarQube hosting stack.

Descriptors name the desired resources and refer to each other by name only, so
a stack can be checked as a whole before anything is handed to the provisioning
engine. `StackDescriptor.validate` stops at the first invalid field or reference.
"""

import ipaddress
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, List, Mapping, Optional, Tuple, Union

SUBNET_TYPES = ("public", "private", "isolated")
LAUNCH_TYPES = ("EC2", "FARGATE")
DNS_RECORD_TYPES = ("A", "AAAA", "A_AAAA", "SRV")
SECRET_SOURCES = ("ssm", "config")


@dataclass(frozen=True)
class SubnetSpec:
    name: str
    subnet_type: str
    cidr_mask: int


@dataclass(frozen=True)
class SubnetAllocation:
    name: str
    subnet_type: str
    az_index: int
    cidr: str


@dataclass(frozen=True)
class NetworkTopology:
    name: str
    cidr: str
    max_azs: int
    subnets: Tuple[SubnetSpec, ...]
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True
    nat_gateways: Optional[int] = None

    def nat_gateway_count(self) -> int:
        if not any(s.subnet_type == "private" for s in self.subnets):
            return 0
        if self.nat_gateways is None:
            return self.max_azs
        return self.nat_gateways

    def allocate_subnets(self) -> List[SubnetAllocation]:
        """Carve one subnet per (spec, AZ) out of the parent block, in declaration order.

        Each subnet is aligned to its own mask, so allocations never overlap.
        Raises ValueError when a mask is shorter than the parent's or the block is exhausted.
        """
        try:
            parent = ipaddress.ip_network(self.cidr)
        except ValueError as e:
            raise ValueError(f"Network '{self.name}' has an invalid CIDR block '{self.cidr}': {e}")
        if self.max_azs < 1:
            raise ValueError(f"Network '{self.name}' must span at least one availability zone")

        allocations = []
        cursor = int(parent.network_address)
        end = int(parent.broadcast_address)
        for spec in self.subnets:
            if spec.cidr_mask < parent.prefixlen or spec.cidr_mask > parent.max_prefixlen:
                raise ValueError(
                    f"Subnet '{spec.name}' mask /{spec.cidr_mask} does not fit in {self.cidr}"
                )
            size = 2 ** (parent.max_prefixlen - spec.cidr_mask)
            for az_index in range(self.max_azs):
                # align the cursor up to the subnet boundary
                cursor = (cursor + size - 1) // size * size
                if cursor + size - 1 > end:
                    raise ValueError(
                        f"Network '{self.name}' block {self.cidr} is exhausted allocating subnet '{spec.name}'"
                    )
                subnet = type(parent)((cursor, spec.cidr_mask))
                allocations.append(SubnetAllocation(spec.name, spec.subnet_type, az_index, str(subnet)))
                cursor += size
        return allocations

    def validate(self) -> None:
        names = [s.name for s in self.subnets]
        if len(set(names)) != len(names):
            raise ValueError(f"Network '{self.name}' declares duplicate subnet names: {names}")
        for spec in self.subnets:
            if spec.subnet_type not in SUBNET_TYPES:
                raise ValueError(f"Subnet '{spec.name}' has unknown type '{spec.subnet_type}'")
        types = {s.subnet_type for s in self.subnets}
        if "private" in types and "public" not in types:
            raise ValueError(f"Network '{self.name}' has private subnets but no public subnet for NAT")
        if self.nat_gateways is not None and not 0 <= self.nat_gateways <= self.max_azs:
            raise ValueError(f"Network '{self.name}' nat_gateways must be between 0 and {self.max_azs}")

        allocations = self.allocate_subnets()
        networks = [ipaddress.ip_network(a.cidr) for a in allocations]
        for i, a in enumerate(networks):
            for b in networks[i + 1:]:
                if a.overlaps(b):
                    raise ValueError(f"Subnets {a} and {b} overlap in network '{self.name}'")


@dataclass(frozen=True)
class ScalingBounds:
    min_capacity: int
    max_capacity: int
    desired_capacity: int

    def validate(self, owner: str) -> None:
        if not 0 <= self.min_capacity <= self.desired_capacity <= self.max_capacity:
            raise ValueError(
                f"Scaling bounds for '{owner}' must satisfy 0 <= min <= desired <= max, got "
                f"min={self.min_capacity} desired={self.desired_capacity} max={self.max_capacity}"
            )


@dataclass(frozen=True)
class InstanceCapacity:
    instance_type: str
    scaling: ScalingBounds
    key_name: Optional[str] = None
    user_data: Tuple[str, ...] = ()
    security_groups: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ComputeCluster:
    name: str
    network: str
    capacity: Optional[InstanceCapacity] = None


@dataclass(frozen=True)
class IngressRule:
    port: int
    description: str
    cidr: Optional[str] = None
    source_group: Optional[str] = None
    protocol: str = "tcp"


@dataclass(frozen=True)
class SecurityGroupSpec:
    name: str
    network: str
    description: str
    ingress: Tuple[IngressRule, ...] = ()
    allow_all_outbound: bool = True


@dataclass(frozen=True)
class SecretRef:
    """A lookup key for a secret held outside the stack. Never the secret itself."""
    key: str
    source: str = "ssm"


@dataclass(frozen=True)
class ConnectionUrl:
    """Connection string derived from a datastore's resolved endpoint."""
    datastore: str
    scheme: str = "jdbc:postgresql"

    def render(self, host: str, port: Union[int, str], database: str) -> str:
        return f"{self.scheme}://{host}:{port}/{database}"


@dataclass(frozen=True)
class DatastoreInstance:
    name: str
    network: str
    engine: str
    instance_class: str
    database_name: str
    username: str
    password: SecretRef
    port: int = 5432
    backup_retention_days: int = 7
    multi_az: bool = False
    performance_insights: bool = True
    auto_minor_version_upgrade: bool = True
    allocated_storage: int = 100
    security_groups: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ContainerImage:
    registry_image: Optional[str] = None
    repository_context_key: Optional[str] = None
    tag: str = "latest"


@dataclass(frozen=True)
class PortMapping:
    container_port: int
    host_port: Optional[int] = None
    protocol: str = "tcp"

    @property
    def exposed_port(self) -> int:
        return self.host_port if self.host_port is not None else self.container_port


@dataclass(frozen=True)
class Ulimit:
    name: str
    soft_limit: int
    hard_limit: int


@dataclass(frozen=True)
class LogSink:
    name: str
    stream_prefix: str
    retention_in_days: Optional[int] = None


@dataclass(frozen=True)
class LoadBalancerSpec:
    public: bool = True
    listener_port: int = 80
    health_check_path: str = "/"
    security_groups: Tuple[str, ...] = ()


EnvValue = Union[str, SecretRef, ConnectionUrl]


@dataclass(frozen=True)
class WorkloadDefinition:
    name: str
    cluster: str
    launch_type: str
    image: ContainerImage
    cpu: int
    memory_limit_mib: int
    logging: LogSink
    port_mappings: Tuple[PortMapping, ...] = ()
    environment: Mapping[str, EnvValue] = field(default_factory=dict, hash=False)
    ulimits: Tuple[Ulimit, ...] = ()
    desired_count: int = 1
    load_balancer: Optional[LoadBalancerSpec] = None
    security_groups: Tuple[str, ...] = ()
    assign_public_ip: bool = False

    def __post_init__(self):
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    @property
    def target_port(self) -> Optional[int]:
        """Port the load balancer forwards to."""
        if not self.port_mappings:
            return None
        return self.port_mappings[0].exposed_port

    def secret_refs(self) -> List[SecretRef]:
        return [v for v in self.environment.values() if isinstance(v, SecretRef)]

    def connection_urls(self) -> List[ConnectionUrl]:
        return [v for v in self.environment.values() if isinstance(v, ConnectionUrl)]


@dataclass(frozen=True)
class ServiceRegistration:
    name: str
    namespace: str
    network: str
    workload: str
    dns_record_type: str = "A"
    dns_ttl: int = 30
    load_balancer: bool = False


def _check_unique(kind: str, names: List[str]) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValueError(f"Duplicate {kind} name '{name}'")
        seen.add(name)


def _check_port(owner: str, port: int) -> None:
    if not 1 <= port <= 65535:
        raise ValueError(f"Port {port} on '{owner}' is out of range")


@dataclass(frozen=True)
class StackDescriptor:
    name: str
    revision: int
    network: NetworkTopology
    security_groups: Tuple[SecurityGroupSpec, ...] = ()
    clusters: Tuple[ComputeCluster, ...] = ()
    datastores: Tuple[DatastoreInstance, ...] = ()
    workloads: Tuple[WorkloadDefinition, ...] = ()
    registrations: Tuple[ServiceRegistration, ...] = ()
    tags: Mapping[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))

    def resource_names(self) -> Iterator[Tuple[str, str]]:
        """Yield (owner, name) for every provider resource keyed by a descriptor name."""
        yield f"network '{self.network.name}'", self.network.name
        for group in self.security_groups:
            yield f"security group '{group.name}'", group.name
        for cluster in self.clusters:
            yield f"cluster '{cluster.name}'", cluster.name
        for store in self.datastores:
            owner = f"datastore '{store.name}'"
            yield owner, store.name
            yield owner, f"{store.name}-subnets"
        for workload in self.workloads:
            owner = f"workload '{workload.name}'"
            yield owner, workload.name
            yield owner, f"{workload.name}-logs"
            yield owner, f"{workload.name}-task"
            if workload.load_balancer is not None:
                yield owner, f"{workload.name}-alb"
                yield owner, f"{workload.name}-tg"
                yield owner, f"{workload.name}-listener"
        for registration in self.registrations:
            owner = f"registration '{registration.name}'"
            yield owner, f"{registration.name}-discovery"
            if registration.load_balancer:
                yield owner, f"{registration.name}-alias"

    def cluster(self, name: str) -> Optional[ComputeCluster]:
        return next((c for c in self.clusters if c.name == name), None)

    def datastore(self, name: str) -> Optional[DatastoreInstance]:
        return next((d for d in self.datastores if d.name == name), None)

    def workload(self, name: str) -> Optional[WorkloadDefinition]:
        return next((w for w in self.workloads if w.name == name), None)

    def _require_network(self, owner: str, network: str) -> None:
        if network != self.network.name:
            raise ValueError(f"'{owner}' references network '{network}' which is not in the stack")

    def _require_groups(self, owner: str, groups: Tuple[str, ...]) -> None:
        known = {g.name for g in self.security_groups}
        for group in groups:
            if group not in known:
                raise ValueError(f"'{owner}' references security group '{group}' which is not in the stack")

    def validate(self) -> "StackDescriptor":
        """Check the whole graph and raise ValueError on the first invalid reference."""
        self.network.validate()

        _check_unique("security group", [g.name for g in self.security_groups])
        for group in self.security_groups:
            self._require_network(group.name, group.network)
            for rule in group.ingress:
                _check_port(group.name, rule.port)
                if (rule.cidr is None) == (rule.source_group is None):
                    raise ValueError(
                        f"Ingress rule '{rule.description}' on '{group.name}' needs exactly one of cidr or source_group"
                    )
                if rule.source_group is not None:
                    self._require_groups(group.name, (rule.source_group,))
                else:
                    ipaddress.ip_network(rule.cidr)

        _check_unique("cluster", [c.name for c in self.clusters])
        for cluster in self.clusters:
            self._require_network(cluster.name, cluster.network)
            if cluster.capacity is not None:
                cluster.capacity.scaling.validate(cluster.name)
                self._require_groups(cluster.name, cluster.capacity.security_groups)

        _check_unique("datastore", [d.name for d in self.datastores])
        for store in self.datastores:
            self._require_network(store.name, store.network)
            self._require_groups(store.name, store.security_groups)
            _check_port(store.name, store.port)
            if store.backup_retention_days < 0:
                raise ValueError(f"Datastore '{store.name}' backup retention cannot be negative")
            if store.password.source not in SECRET_SOURCES:
                raise ValueError(f"Datastore '{store.name}' uses unknown secret source '{store.password.source}'")
            if self.network.max_azs < 2:
                raise ValueError(f"Datastore '{store.name}' needs subnets in at least two availability zones")

        _check_unique("workload", [w.name for w in self.workloads])
        for workload in self.workloads:
            self._validate_workload(workload)

        _check_unique("registration", [r.name for r in self.registrations])
        direct = set()
        for registration in self.registrations:
            self._require_network(registration.name, registration.network)
            workload = self.workload(registration.workload)
            if workload is None:
                raise ValueError(
                    f"Registration '{registration.name}' references workload '{registration.workload}' which is not in the stack"
                )
            if registration.load_balancer and workload.load_balancer is None:
                raise ValueError(
                    f"Registration '{registration.name}' registers a load balancer but '{workload.name}' has none"
                )
            if not registration.load_balancer:
                # an ECS service carries a single service registry
                if workload.name in direct:
                    raise ValueError(f"Workload '{workload.name}' is registered directly more than once")
                direct.add(workload.name)
            if registration.dns_record_type not in DNS_RECORD_TYPES:
                raise ValueError(f"Registration '{registration.name}' has unknown record type '{registration.dns_record_type}'")
            if registration.dns_ttl <= 0:
                raise ValueError(f"Registration '{registration.name}' DNS TTL must be positive")

        # the builder keys every provider resource by these names in one map
        claimed = {}
        for owner, name in self.resource_names():
            if name in claimed:
                raise ValueError(f"Resource name '{name}' is claimed by both {claimed[name]} and {owner}")
            claimed[name] = owner
        return self

    def _validate_workload(self, workload: WorkloadDefinition) -> None:
        cluster = self.cluster(workload.cluster)
        if cluster is None:
            raise ValueError(f"Workload '{workload.name}' references cluster '{workload.cluster}' which is not in the stack")
        if workload.launch_type not in LAUNCH_TYPES:
            raise ValueError(f"Workload '{workload.name}' has unknown launch type '{workload.launch_type}'")
        if workload.launch_type == "EC2" and cluster.capacity is None:
            raise ValueError(f"Workload '{workload.name}' runs on EC2 but cluster '{cluster.name}' has no instance capacity")
        image = workload.image
        if (image.registry_image is None) == (image.repository_context_key is None):
            raise ValueError(f"Workload '{workload.name}' needs exactly one of registry_image or repository_context_key")
        if workload.desired_count < 0:
            raise ValueError(f"Workload '{workload.name}' desired count cannot be negative")

        for mapping in workload.port_mappings:
            _check_port(workload.name, mapping.container_port)
            if mapping.host_port is not None:
                _check_port(workload.name, mapping.host_port)
                # awsvpc networking maps host and container ports one to one
                if workload.launch_type == "FARGATE" and mapping.host_port != mapping.container_port:
                    raise ValueError(
                        f"Workload '{workload.name}' maps {mapping.container_port} to host port {mapping.host_port}, "
                        f"which Fargate does not support"
                    )

        for url in workload.connection_urls():
            if self.datastore(url.datastore) is None:
                raise ValueError(
                    f"Workload '{workload.name}' connection URL references datastore '{url.datastore}' which is not in the stack"
                )
        for ref in workload.secret_refs():
            if ref.source not in SECRET_SOURCES:
                raise ValueError(f"Workload '{workload.name}' uses unknown secret source '{ref.source}'")

        self._require_groups(workload.name, workload.security_groups)
        if workload.load_balancer is not None:
            if workload.target_port is None:
                raise ValueError(f"Workload '{workload.name}' has a load balancer but no port mappings")
            _check_port(workload.name, workload.load_balancer.listener_port)
            self._require_groups(workload.name, workload.load_balancer.security_groups)
            if self.network.max_azs < 2:
                raise ValueError(
                    f"Workload '{workload.name}' load balancer needs subnets in at least two availability zones"
                )
            if workload.load_balancer.public and not any(s.subnet_type == "public" for s in self.network.subnets):
                raise ValueError(f"Workload '{workload.name}' has a public load balancer but the network has no public subnet")
