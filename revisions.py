"""
The three revisions of the SonarQube hosting stack.

Revision 1 runs SonarQube on EC2-backed ECS behind a public ALB. Revision 2 moves it to
Fargate and isolates the ALB, service and database behind chained security groups.
Revision 3 keeps that topology but runs an image built outside this stack and pushed to
an ECR repository named through a context key.
"""

from typing import Callable, Dict, Optional

from config import Config
from descriptors import (
    ComputeCluster,
    ConnectionUrl,
    ContainerImage,
    DatastoreInstance,
    IngressRule,
    InstanceCapacity,
    LoadBalancerSpec,
    LogSink,
    NetworkTopology,
    PortMapping,
    ScalingBounds,
    SecretRef,
    SecurityGroupSpec,
    ServiceRegistration,
    StackDescriptor,
    SubnetSpec,
    Ulimit,
    WorkloadDefinition,
)

DEFAULT_CIDR = "10.0.0.0/16"
DEFAULT_SECRET_KEY = "SONAR_JDBC_PASSWORD"
DEFAULT_REPOSITORY_CONTEXT_KEY = "sonarRepositoryName"
LATEST_REVISION = 3

SONAR_IMAGE = "sonarqube:8.2-community"
SONAR_PORT = 9000
DB_PORT = 5432
NAMESPACE = "sonar.morningcode.io"
SERVICE_NAME = "sonarqube-service"
CLUSTER_NAME = "morning-code-sonar-cluster"
DB_NAME = "sonar-db"
DB_USER = "sonar"

# Elasticsearch inside SonarQube refuses to start below these limits
ES_ULIMITS = (
    Ulimit("nofile", soft_limit=65536, hard_limit=65536),
    Ulimit("memlock", soft_limit=-1, hard_limit=-1),
)

EC2_USER_DATA = (
    "echo 'Adding User Commands...'",
    "echo vm.max_map_count=262144 >> /etc/sysctl.conf",
    "sysctl -w vm.max_map_count=262144",
    "echo installing Amazon Inspector Agent...",
    "curl -O https://d1wk0tztpsntt1.cloudfront.net/linux/latest/install",
    "sudo bash install",
    "echo 'finish!!'",
)


def _network(settings: Config) -> NetworkTopology:
    return NetworkTopology(
        name="vpc",
        cidr=settings.network_cidr or DEFAULT_CIDR,
        max_azs=2,
        subnets=(
            SubnetSpec("Public", "public", 18),
            SubnetSpec("Private", "private", 18),
        ),
    )


def _datastore(settings: Config, security_groups) -> DatastoreInstance:
    return DatastoreInstance(
        name=DB_NAME,
        network="vpc",
        engine="postgres",
        instance_class="db.t3.micro",
        database_name="sonar",
        username=DB_USER,
        password=SecretRef(settings.secret_key or DEFAULT_SECRET_KEY),
        port=DB_PORT,
        backup_retention_days=7,
        multi_az=False,
        performance_insights=True,
        auto_minor_version_upgrade=True,
        security_groups=security_groups,
    )


def _sonar_environment(settings: Config, extra: Optional[Dict[str, str]] = None) -> dict:
    environment = {
        "SONAR_JDBC_URL": ConnectionUrl(DB_NAME),
        "SONAR_JDBC_USERNAME": DB_USER,
        "SONAR_JDBC_PASSWORD": SecretRef(settings.secret_key or DEFAULT_SECRET_KEY),
    }
    environment.update(extra or {})
    return environment


def _log_sink() -> LogSink:
    return LogSink(name="morning-code-sonarqube-service", stream_prefix="morning-code-sonarqube-service")


def revision_1(settings: Config) -> StackDescriptor:
    """EC2-backed ECS with a public ALB; the database accepts connections from anywhere."""
    security_groups = (
        SecurityGroupSpec(
            name="sonar-db-sg",
            network="vpc",
            description="security group for SonarQube RDS",
            ingress=(IngressRule(DB_PORT, "SonarQube RDS Port", cidr="0.0.0.0/0"),),
        ),
        SecurityGroupSpec(
            name="sonar-alb-sg",
            network="vpc",
            description="security group for SonarQube ALB",
            ingress=(IngressRule(80, "Http Port", cidr="0.0.0.0/0"),),
        ),
        SecurityGroupSpec(
            name="sonar-sg",
            network="vpc",
            description="security group for SonarQube ECS",
            ingress=(IngressRule(80, "ECS Port", source_group="sonar-alb-sg"),),
        ),
    )
    cluster = ComputeCluster(
        name=CLUSTER_NAME,
        network="vpc",
        capacity=InstanceCapacity(
            instance_type="t3.medium",
            # desired 0 so instances can be shut down while idle
            scaling=ScalingBounds(min_capacity=0, max_capacity=1, desired_capacity=0),
            key_name="sonar-key",
            user_data=EC2_USER_DATA,
            security_groups=("sonar-sg",),
        ),
    )
    workload = WorkloadDefinition(
        name=SERVICE_NAME,
        cluster=CLUSTER_NAME,
        launch_type="EC2",
        image=ContainerImage(registry_image=SONAR_IMAGE),
        cpu=256,
        memory_limit_mib=2048,
        logging=_log_sink(),
        port_mappings=(PortMapping(container_port=SONAR_PORT, host_port=80),),
        environment=_sonar_environment(settings),
        ulimits=ES_ULIMITS,
        desired_count=1,
        load_balancer=LoadBalancerSpec(public=True, listener_port=80, security_groups=("sonar-alb-sg",)),
    )
    registration = ServiceRegistration(
        name=SERVICE_NAME,
        namespace=NAMESPACE,
        network="vpc",
        workload=SERVICE_NAME,
        dns_record_type="A_AAAA",
        dns_ttl=30,
        load_balancer=True,
    )
    return StackDescriptor(
        name="SonarQubeStack",
        revision=1,
        network=_network(settings),
        security_groups=security_groups,
        clusters=(cluster,),
        datastores=(_datastore(settings, ("sonar-db-sg",)),),
        workloads=(workload,),
        registrations=(registration,),
        tags={"ServiceName": "sonarqube"},
    )


def _fargate_stack(settings: Config, revision: int, image: ContainerImage) -> StackDescriptor:
    security_groups = (
        SecurityGroupSpec(
            name="sonar-alb-sg",
            network="vpc",
            description="security group for SonarQube ALB",
            ingress=(IngressRule(80, "Http Port", cidr="0.0.0.0/0"),),
        ),
        SecurityGroupSpec(
            name="sonar-sg",
            network="vpc",
            description="security group for SonarQube ECS",
            ingress=(IngressRule(SONAR_PORT, "ECS Port", source_group="sonar-alb-sg"),),
        ),
        SecurityGroupSpec(
            name="sonar-db-sg",
            network="vpc",
            description="security group for SonarQube RDS",
            ingress=(IngressRule(DB_PORT, "DB Port", source_group="sonar-sg"),),
        ),
    )
    workload = WorkloadDefinition(
        name=SERVICE_NAME,
        cluster=CLUSTER_NAME,
        launch_type="FARGATE",
        image=image,
        cpu=1024,
        memory_limit_mib=4096,
        logging=_log_sink(),
        port_mappings=(PortMapping(container_port=SONAR_PORT),),
        # vm.max_map_count cannot be raised on Fargate
        environment=_sonar_environment(
            settings, {"SONAR_SEARCH_JAVAADDITIONALOPTS": "-Dnode.store.allow_mmap=false"}
        ),
        ulimits=(ES_ULIMITS[0],),
        desired_count=1,
        load_balancer=LoadBalancerSpec(public=True, listener_port=80, security_groups=("sonar-alb-sg",)),
        security_groups=("sonar-sg",),
    )
    registration = ServiceRegistration(
        name=SERVICE_NAME,
        namespace=NAMESPACE,
        network="vpc",
        workload=SERVICE_NAME,
        dns_record_type="A",
        dns_ttl=30,
    )
    return StackDescriptor(
        name="SonarQubeStack",
        revision=revision,
        network=_network(settings),
        security_groups=security_groups,
        clusters=(ComputeCluster(name=CLUSTER_NAME, network="vpc"),),
        datastores=(_datastore(settings, ("sonar-db-sg",)),),
        workloads=(workload,),
        registrations=(registration,),
        tags={"ServiceName": "sonarqube"},
    )


def revision_2(settings: Config) -> StackDescriptor:
    """Fargate running the public registry image, with chained security groups."""
    return _fargate_stack(settings, 2, ContainerImage(registry_image=SONAR_IMAGE))


def revision_3(settings: Config) -> StackDescriptor:
    """Fargate running an externally built image from an ECR repository named by a context key."""
    image = ContainerImage(
        repository_context_key=settings.repository_context_key or DEFAULT_REPOSITORY_CONTEXT_KEY,
        tag=settings.image_tag or "latest",
    )
    return _fargate_stack(settings, 3, image)


REVISIONS: Dict[int, Callable[[Config], StackDescriptor]] = {
    1: revision_1,
    2: revision_2,
    3: revision_3,
}


def select_revision(settings: Config) -> int:
    revision = settings.revision if settings.revision is not None else LATEST_REVISION
    if revision not in REVISIONS:
        raise ValueError(f"Unknown stack revision {revision}; expected one of {sorted(REVISIONS)}")
    return revision


def build_revision(revision: int, settings: Config) -> StackDescriptor:
    """Assemble and validate the descriptor graph for the given revision."""
    if revision not in REVISIONS:
        raise ValueError(f"Unknown stack revision {revision}; expected one of {sorted(REVISIONS)}")
    return REVISIONS[revision](settings).validate()
