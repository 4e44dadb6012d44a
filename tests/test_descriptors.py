"""Unit tests for descriptor records and graph validation."""

from dataclasses import replace

import pytest

from descriptors import (
    ComputeCluster,
    ConnectionUrl,
    ContainerImage,
    IngressRule,
    InstanceCapacity,
    LogSink,
    NetworkTopology,
    PortMapping,
    ScalingBounds,
    SecretRef,
    SecurityGroupSpec,
    ServiceRegistration,
    StackDescriptor,
    SubnetSpec,
    WorkloadDefinition,
)
from revisions import revision_1, revision_2


def two_tier_network(cidr="10.0.0.0/16", max_azs=2, mask=18) -> NetworkTopology:
    return NetworkTopology(
        name="vpc",
        cidr=cidr,
        max_azs=max_azs,
        subnets=(SubnetSpec("Public", "public", mask), SubnetSpec("Private", "private", mask)),
    )


class TestNetworkTopology:
    """Subnet allocation and network invariants."""

    def test_two_tiers_fill_the_block(self):
        allocations = two_tier_network().allocate_subnets()

        assert [(a.name, a.az_index, a.cidr) for a in allocations] == [
            ("Public", 0, "10.0.0.0/18"),
            ("Public", 1, "10.0.64.0/18"),
            ("Private", 0, "10.0.128.0/18"),
            ("Private", 1, "10.0.192.0/18"),
        ]

    def test_mixed_masks_are_aligned(self):
        network = NetworkTopology(
            name="vpc",
            cidr="10.1.0.0/16",
            max_azs=1,
            subnets=(
                SubnetSpec("Public", "public", 24),
                SubnetSpec("Private", "private", 20),
            ),
        )

        cidrs = [a.cidr for a in network.allocate_subnets()]

        assert cidrs == ["10.1.0.0/24", "10.1.16.0/20"]

    def test_exhausted_block_is_rejected(self):
        with pytest.raises(ValueError, match="exhausted"):
            two_tier_network(max_azs=3).validate()

    def test_mask_shorter_than_parent_is_rejected(self):
        with pytest.raises(ValueError, match="does not fit"):
            two_tier_network(cidr="10.0.0.0/20", mask=18).validate()

    def test_invalid_cidr_is_rejected(self):
        with pytest.raises(ValueError, match="invalid CIDR"):
            two_tier_network(cidr="10.0.0.300/16").validate()

    def test_private_subnets_need_a_public_subnet(self):
        network = NetworkTopology(name="vpc", cidr="10.0.0.0/16", max_azs=2,
                                  subnets=(SubnetSpec("Private", "private", 18),))

        with pytest.raises(ValueError, match="no public subnet"):
            network.validate()

    def test_duplicate_subnet_names_are_rejected(self):
        network = NetworkTopology(name="vpc", cidr="10.0.0.0/16", max_azs=1,
                                  subnets=(SubnetSpec("A", "public", 24), SubnetSpec("A", "isolated", 24)))

        with pytest.raises(ValueError, match="duplicate subnet names"):
            network.validate()

    def test_nat_gateway_count(self):
        assert two_tier_network().nat_gateway_count() == 2
        assert replace(two_tier_network(), nat_gateways=1).nat_gateway_count() == 1
        public_only = NetworkTopology(name="vpc", cidr="10.0.0.0/16", max_azs=2,
                                      subnets=(SubnetSpec("Public", "public", 24),))
        assert public_only.nat_gateway_count() == 0


class TestScalingBounds:
    """min <= desired <= max."""

    @pytest.mark.parametrize("bounds", [
        ScalingBounds(min_capacity=0, max_capacity=1, desired_capacity=0),
        ScalingBounds(min_capacity=1, max_capacity=3, desired_capacity=2),
        ScalingBounds(min_capacity=2, max_capacity=2, desired_capacity=2),
    ])
    def test_valid_bounds(self, bounds):
        bounds.validate("asg")

    @pytest.mark.parametrize("bounds", [
        ScalingBounds(min_capacity=2, max_capacity=3, desired_capacity=1),
        ScalingBounds(min_capacity=0, max_capacity=1, desired_capacity=2),
        ScalingBounds(min_capacity=-1, max_capacity=1, desired_capacity=0),
    ])
    def test_invalid_bounds(self, bounds):
        with pytest.raises(ValueError, match="min <= desired <= max"):
            bounds.validate("asg")

    def test_stack_validation_checks_cluster_bounds(self, settings):
        stack = revision_1(settings)
        cluster = stack.clusters[0]
        broken = replace(cluster, capacity=replace(
            cluster.capacity, scaling=ScalingBounds(min_capacity=1, max_capacity=1, desired_capacity=0)))

        with pytest.raises(ValueError, match="morning-code-sonar-cluster"):
            replace(stack, clusters=(broken,)).validate()


class TestPortsAndUrls:
    """Port mapping and connection URL helpers."""

    def test_exposed_port_prefers_host_port(self):
        assert PortMapping(container_port=9000, host_port=80).exposed_port == 80
        assert PortMapping(container_port=9000).exposed_port == 9000

    def test_connection_url_render(self):
        url = ConnectionUrl("sonar-db")

        assert url.render("db.internal", 5432, "sonar") == "jdbc:postgresql://db.internal:5432/sonar"

    def test_workload_collects_references(self, settings):
        workload = revision_2(settings).workloads[0]

        assert workload.secret_refs() == [SecretRef("SONAR_JDBC_PASSWORD")]
        assert workload.connection_urls() == [ConnectionUrl("sonar-db")]


class TestStackValidation:
    """Cross-reference validation stops at the first invalid reference."""

    def test_revisions_are_valid(self, settings):
        revision_1(settings).validate()
        revision_2(settings).validate()

    def test_first_invalid_reference_wins(self, settings):
        stack = revision_2(settings)
        workload = replace(stack.workloads[0], cluster="missing-cluster")
        registration = replace(stack.registrations[0], workload="missing-workload")

        with pytest.raises(ValueError, match="cluster 'missing-cluster'"):
            replace(stack, workloads=(workload,), registrations=(registration,)).validate()

    def test_unknown_network_reference(self, settings):
        stack = revision_2(settings)
        group = replace(stack.security_groups[0], network="other-vpc")

        with pytest.raises(ValueError, match="network 'other-vpc'"):
            replace(stack, security_groups=(group,) + stack.security_groups[1:]).validate()

    def test_unknown_source_group(self, settings):
        stack = revision_2(settings)
        group = SecurityGroupSpec("extra", "vpc", "extra", ingress=(IngressRule(22, "ssh", source_group="bastion"),))

        with pytest.raises(ValueError, match="security group 'bastion'"):
            replace(stack, security_groups=stack.security_groups + (group,)).validate()

    def test_ingress_rule_needs_exactly_one_source(self, settings):
        stack = revision_2(settings)
        group = SecurityGroupSpec("extra", "vpc", "extra",
                                  ingress=(IngressRule(22, "ssh", cidr="10.0.0.0/8", source_group="sonar-sg"),))

        with pytest.raises(ValueError, match="exactly one of cidr or source_group"):
            replace(stack, security_groups=stack.security_groups + (group,)).validate()

    def test_connection_url_must_name_a_datastore(self, settings):
        stack = revision_2(settings)
        workload = stack.workloads[0]
        environment = dict(workload.environment, SONAR_JDBC_URL=ConnectionUrl("other-db"))

        with pytest.raises(ValueError, match="datastore 'other-db'"):
            replace(stack, workloads=(replace(workload, environment=environment),)).validate()

    def test_fargate_cannot_remap_host_port(self, settings):
        stack = revision_2(settings)
        workload = replace(stack.workloads[0], port_mappings=(PortMapping(9000, host_port=80),))

        with pytest.raises(ValueError, match="Fargate"):
            replace(stack, workloads=(workload,)).validate()

    def test_ec2_workload_needs_instance_capacity(self, settings):
        stack = revision_2(settings)
        workload = replace(stack.workloads[0], launch_type="EC2")

        with pytest.raises(ValueError, match="no instance capacity"):
            replace(stack, workloads=(workload,)).validate()

    def test_image_needs_exactly_one_source(self, settings):
        stack = revision_2(settings)
        image = ContainerImage(registry_image="sonarqube:8.2-community", repository_context_key="repo")
        workload = replace(stack.workloads[0], image=image)

        with pytest.raises(ValueError, match="registry_image or repository_context_key"):
            replace(stack, workloads=(workload,)).validate()

    def test_load_balancer_needs_a_port(self, settings):
        stack = revision_2(settings)
        workload = replace(stack.workloads[0], port_mappings=())

        with pytest.raises(ValueError, match="no port mappings"):
            replace(stack, workloads=(workload,)).validate()

    def test_load_balancer_registration_needs_a_load_balancer(self, settings):
        stack = revision_1(settings)
        workload = replace(stack.workloads[0], load_balancer=None)

        with pytest.raises(ValueError, match="has none"):
            replace(stack, workloads=(workload,)).validate()

    def test_workload_registered_directly_once(self, settings):
        stack = revision_2(settings)
        second = replace(stack.registrations[0], name="sonarqube-service-2")

        with pytest.raises(ValueError, match="more than once"):
            replace(stack, registrations=stack.registrations + (second,)).validate()

    def test_dns_ttl_must_be_positive(self, settings):
        stack = revision_2(settings)
        registration = replace(stack.registrations[0], dns_ttl=0)

        with pytest.raises(ValueError, match="TTL"):
            replace(stack, registrations=(registration,)).validate()

    def test_duplicate_workload_names(self, settings):
        stack = revision_2(settings)

        with pytest.raises(ValueError, match="Duplicate workload name"):
            replace(stack, workloads=stack.workloads * 2).validate()

    def test_name_shared_across_kinds(self, settings):
        stack = revision_2(settings)
        group = SecurityGroupSpec(name="vpc", network="vpc", description="clashes with the network")

        with pytest.raises(ValueError, match="Resource name 'vpc' is claimed by both network 'vpc' and security group 'vpc'"):
            replace(stack, security_groups=stack.security_groups + (group,)).validate()

    def test_derived_name_shared_across_kinds(self, settings):
        stack = revision_2(settings)
        group = SecurityGroupSpec(name="sonarqube-service-alb", network="vpc", description="clashes with the ALB")

        with pytest.raises(ValueError, match="'sonarqube-service-alb' is claimed by both"):
            replace(stack, security_groups=stack.security_groups + (group,)).validate()

    def test_resource_names_of_a_revision(self, settings):
        names = [name for _, name in revision_1(settings).resource_names()]

        assert len(names) == len(set(names))
        assert "sonar-db-subnets" in names
        assert "sonarqube-service-alias" in names

    def test_load_balancer_needs_two_zones(self, settings):
        stack = revision_2(settings)
        workload = replace(stack.workloads[0], environment={})

        with pytest.raises(ValueError, match="load balancer needs subnets in at least two availability zones"):
            replace(stack, datastores=(), workloads=(workload,),
                    network=replace(stack.network, max_azs=1)).validate()

    def test_datastore_needs_two_zones(self, settings):
        stack = revision_2(settings)

        with pytest.raises(ValueError, match="Datastore 'sonar-db' needs subnets in at least two"):
            replace(stack, network=replace(stack.network, max_azs=1)).validate()

    def test_public_load_balancer_needs_public_subnet(self, settings):
        stack = revision_2(settings)
        network = replace(stack.network, subnets=(SubnetSpec("Isolated", "isolated", 18),))

        with pytest.raises(ValueError, match="public load balancer but the network has no public subnet"):
            replace(stack, network=network).validate()

    def test_minimal_stack(self):
        stack = StackDescriptor(
            name="minimal",
            revision=1,
            network=two_tier_network(),
            clusters=(ComputeCluster("cluster", "vpc", InstanceCapacity(
                "t3.small", ScalingBounds(min_capacity=1, max_capacity=1, desired_capacity=1))),),
            workloads=(WorkloadDefinition(
                name="web",
                cluster="cluster",
                launch_type="EC2",
                image=ContainerImage(registry_image="nginx"),
                cpu=128,
                memory_limit_mib=256,
                logging=LogSink("web", "web"),
            ),),
            registrations=(ServiceRegistration("web", "internal.local", "vpc", "web", dns_record_type="SRV"),),
        )

        assert stack.validate() is stack
