import base64
import inspect
import json
import sys
import pulumi
import pulumi_aws as aws
from automapper import mapper
from typing import Any, Dict, List, Optional

from config import Config
from descriptors import (
    ComputeCluster,
    ConnectionUrl,
    ContainerImage,
    DatastoreInstance,
    NetworkTopology,
    SecretRef,
    SecurityGroupSpec,
    ServiceRegistration,
    StackDescriptor,
    WorkloadDefinition,
)

# Consolidated list of common AWS region abbreviations
AWS_REGION_ABBREVIATIONS = {
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-south-1": "aps1",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
}

ECS_OPTIMIZED_AMI_PARAMETER = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"
ECS_INSTANCE_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role"
ECS_TASK_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

def assume_role_policy(service: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [{
            "Action": "sts:AssumeRole",
            "Effect": "Allow",
            "Principal": {"Service": service},
        }],
    })

def render_user_data(cluster_name: str, commands) -> str:
    """Base64 user data joining the instance to the ECS cluster before running the extra commands."""
    lines = ["#!/bin/bash", f"echo ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config"]
    lines.extend(commands)
    return base64.b64encode(("\n".join(lines) + "\n").encode("utf-8")).decode("ascii")

def expand_record_types(record_type: str) -> List[str]:
    return ["A", "AAAA"] if record_type == "A_AAAA" else [record_type]

def container_definition(workload: WorkloadDefinition, image: str, environment: Dict[str, Any],
                         log_group: str, region: str) -> Dict[str, Any]:
    port_mappings = []
    for mapping in workload.port_mappings:
        entry = {"containerPort": mapping.container_port, "protocol": mapping.protocol}
        if mapping.host_port is not None:
            entry["hostPort"] = mapping.host_port
        port_mappings.append(entry)

    return {
        "name": workload.name,
        "image": image,
        "cpu": workload.cpu,
        "memory": workload.memory_limit_mib,
        "essential": True,
        "portMappings": port_mappings,
        "environment": [{"name": k, "value": str(v)} for k, v in sorted(environment.items())],
        "ulimits": [
            {"name": u.name, "softLimit": u.soft_limit, "hardLimit": u.hard_limit} for u in workload.ulimits
        ],
        "logConfiguration": {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": log_group,
                "awslogs-region": region,
                "awslogs-stream-prefix": workload.logging.stream_prefix,
            },
        },
    }

class AWSResourceBuilder:
    def __init__(self, settings: Config, descriptor: StackDescriptor):
        self.settings = settings
        self.descriptor = descriptor
        self.resources: Dict[str, Any] = {}
        self.outputs: Dict[str, Any] = {}
        self.subnets: Dict[str, List[aws.ec2.Subnet]] = {"public": [], "private": [], "isolated": []}
        self.discovery_services: Dict[str, aws.servicediscovery.Service] = {}
        self.namespaces: Dict[str, aws.servicediscovery.PrivateDnsNamespace] = {}
        self._secrets: Dict[SecretRef, Any] = {}

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.replace("-", "").lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.settings.team.strip().lower()
        service = self.settings.service.strip().lower()
        env = self.settings.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.settings.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def stack_tags(self) -> Dict[str, str]:
        tags = dict(self.descriptor.tags)
        tags.update(self.settings.tags or {})
        return tags

    # region Reference resolution
    def resolve_ref(self, name: str, attribute: str = "id") -> Any:
        if name not in self.resources:
            raise ValueError(f"Referenced resource '{name}' not found.")
        attr_val = getattr(self.resources[name], attribute, None)
        if attr_val is None:
            raise ValueError(f"Attribute '{attribute}' not found on resource '{name}'")
        return attr_val

    def resolve_secret(self, ref: SecretRef) -> Any:
        if ref in self._secrets:
            return self._secrets[ref]
        if ref.source == "config":
            # Fetch secret from Pulumi config
            value = pulumi.Config().require_secret(ref.key)
        else:
            parameter = aws.ssm.get_parameter_output(name=ref.key, with_decryption=True)
            value = pulumi.Output.secret(parameter.value)
        pulumi.log.info(f"Resolved secret '{ref.key}' from {ref.source}")
        self._secrets[ref] = value
        return value

    def resolve_context(self, key: str) -> str:
        value = pulumi.Config().get(key)
        if value is None:
            value = (self.settings.context or {}).get(key)
        if value is None:
            raise ValueError(f"Missing context value for key '{key}'")
        pulumi.log.info(f"Resolved context key '{key}' => {value}")
        return value

    def resolve_connection_url(self, url: ConnectionUrl) -> pulumi.Output:
        store = self.descriptor.datastore(url.datastore)
        if store is None or url.datastore not in self.resources:
            raise ValueError(f"Referenced resource '{url.datastore}' not found.")
        instance = self.resources[url.datastore]
        return pulumi.Output.all(instance.address, instance.port).apply(
            lambda args: url.render(args[0], int(args[1]), store.database_name)
        )

    def resolve_image(self, image: ContainerImage) -> Any:
        if image.registry_image is not None:
            return image.registry_image
        repository_name = self.resolve_context(image.repository_context_key)
        repository = aws.ecr.get_repository_output(name=repository_name)
        return repository.repository_url.apply(lambda url: f"{url}:{image.tag}")

    def resolve_value(self, value: Any) -> Any:
        if isinstance(value, SecretRef):
            return self.resolve_secret(value)
        if isinstance(value, ConnectionUrl):
            return self.resolve_connection_url(value)
        return value
    # endregion

    def _args_signature(self, resource_cls) -> Optional[inspect.Signature]:
        args_cls = getattr(sys.modules[resource_cls.__module__], f"{resource_cls.__name__}Args", None)
        if args_cls is None:
            return None
        return inspect.signature(args_cls.__init__)

    def _apply_common_parameters(self, resolved_args: dict, init_sig: Optional[inspect.Signature]) -> dict:
        # Only map-typed 'tags' take the stack tags; autoscaling groups use a list of tag blocks
        tags_param = init_sig.parameters.get("tags") if init_sig else None
        if tags_param is not None and "Mapping" in str(tags_param.annotation):
            resource_tags = self.stack_tags()
            resource_tags.update(resolved_args.get("tags") or {})
            if resource_tags:
                resolved_args["tags"] = resource_tags
        elif tags_param is None:
            resolved_args.pop("tags", None)
        return resolved_args

    def _create(self, resource_name: str, resource_cls, /, args: Any = None,
                opts: Optional[pulumi.ResourceOptions] = None, **kwargs) -> Any:
        # kwargs are provider inputs and may carry the provider's own 'name'
        if resource_name in self.resources:
            raise ValueError(f"Resource name '{resource_name}' is already in use")
        pulumi_name = self.generate_resource_name(resource_name)
        resource_type = f"{resource_cls.__module__.split('.')[-2]}.{resource_cls.__name__}"
        if args is not None:
            if hasattr(args, "tags") and args.tags is None and self.stack_tags():
                args.tags = self.stack_tags()
            resource_instance = resource_cls(pulumi_name, args, opts=opts)
        else:
            resolved_args = self._apply_common_parameters(dict(kwargs), self._args_signature(resource_cls))
            pulumi.log.debug(f"DEBUG for '{resource_name}': final resolved_args => {resolved_args}")
            resource_instance = resource_cls(pulumi_name, opts=opts, **resolved_args)
        self.resources[resource_name] = resource_instance
        pulumi.log.info(f"Created resource: {pulumi_name} ({resource_type})")
        return resource_instance

    def availability_zones(self, count: int) -> List[str]:
        zones = self.settings.availability_zones
        if not zones:
            zones = aws.get_availability_zones(state="available").names
        if len(zones) < count:
            raise ValueError(f"Need {count} availability zones but only {len(zones)} are available")
        return list(zones[:count])

    def workload_subnets(self) -> List[aws.ec2.Subnet]:
        return self.subnets["private"] or self.subnets["isolated"] or self.subnets["public"]

    def build(self):
        self.descriptor.validate()
        pulumi.log.info(f"Building '{self.descriptor.name}' revision {self.descriptor.revision}")
        self.build_network(self.descriptor.network)
        self.build_security_groups(self.descriptor.security_groups)
        for store in self.descriptor.datastores:
            self.build_datastore(store)
        for cluster in self.descriptor.clusters:
            self.build_cluster(cluster)
        for registration in self.descriptor.registrations:
            self.build_discovery_service(registration)
        for workload in self.descriptor.workloads:
            self.build_workload(workload)
        for registration in self.descriptor.registrations:
            if registration.load_balancer:
                self.register_load_balancer(registration)

    def build_network(self, topology: NetworkTopology):
        allocations = topology.allocate_subnets()
        zones = self.availability_zones(topology.max_azs)
        vpc = self._create(topology.name, aws.ec2.Vpc,
                           cidr_block=topology.cidr,
                           enable_dns_hostnames=topology.enable_dns_hostnames,
                           enable_dns_support=topology.enable_dns_support)

        public_route_table = None
        if any(a.subnet_type == "public" for a in allocations):
            igw = self._create(f"{topology.name}-igw", aws.ec2.InternetGateway, vpc_id=vpc.id)
            public_route_table = self._create(
                f"{topology.name}-public-rt", aws.ec2.RouteTable,
                vpc_id=vpc.id,
                routes=[aws.ec2.RouteTableRouteArgs(cidr_block="0.0.0.0/0", gateway_id=igw.id)])

        for allocation in allocations:
            subnet_name = f"{topology.name}-{allocation.name.lower()}-{allocation.az_index + 1}"
            subnet = self._create(subnet_name, aws.ec2.Subnet,
                                  vpc_id=vpc.id,
                                  cidr_block=allocation.cidr,
                                  availability_zone=zones[allocation.az_index],
                                  map_public_ip_on_launch=allocation.subnet_type == "public")
            self.subnets[allocation.subnet_type].append(subnet)
            if allocation.subnet_type == "public":
                self._create(f"{subnet_name}-rta", aws.ec2.RouteTableAssociation,
                             subnet_id=subnet.id, route_table_id=public_route_table.id)

        # NAT gateways sit in the public subnets, one per AZ unless capped
        nat_gateways = []
        for i in range(topology.nat_gateway_count()):
            eip = self._create(f"{topology.name}-nat-eip-{i + 1}", aws.ec2.Eip, domain="vpc")
            nat_gateways.append(self._create(f"{topology.name}-nat-{i + 1}", aws.ec2.NatGateway,
                                             allocation_id=eip.id,
                                             subnet_id=self.subnets["public"][i].id))

        for i, subnet in enumerate(self.subnets["private"]):
            routes = []
            if nat_gateways:
                nat = nat_gateways[(i % topology.max_azs) % len(nat_gateways)]
                routes.append(aws.ec2.RouteTableRouteArgs(cidr_block="0.0.0.0/0", nat_gateway_id=nat.id))
            route_table = self._create(f"{topology.name}-private-rt-{i + 1}", aws.ec2.RouteTable,
                                       vpc_id=vpc.id, routes=routes)
            self._create(f"{topology.name}-private-rta-{i + 1}", aws.ec2.RouteTableAssociation,
                         subnet_id=subnet.id, route_table_id=route_table.id)

        if self.subnets["isolated"]:
            isolated_rt = self._create(f"{topology.name}-isolated-rt", aws.ec2.RouteTable, vpc_id=vpc.id)
            for i, subnet in enumerate(self.subnets["isolated"]):
                self._create(f"{topology.name}-isolated-rta-{i + 1}", aws.ec2.RouteTableAssociation,
                             subnet_id=subnet.id, route_table_id=isolated_rt.id)

    def build_security_groups(self, groups):
        # groups first, rules second: a rule may point at a group declared after it
        for spec in groups:
            egress = []
            if spec.allow_all_outbound:
                egress.append(aws.ec2.SecurityGroupEgressArgs(protocol="-1", from_port=0, to_port=0,
                                                              cidr_blocks=["0.0.0.0/0"]))
            self._create(spec.name, aws.ec2.SecurityGroup,
                         vpc_id=self.resolve_ref(spec.network),
                         description=spec.description,
                         egress=egress)
        for spec in groups:
            self.build_ingress_rules(spec)

    def build_ingress_rules(self, spec: SecurityGroupSpec):
        for i, rule in enumerate(spec.ingress):
            rule_args = dict(type="ingress",
                             protocol=rule.protocol,
                             from_port=rule.port,
                             to_port=rule.port,
                             security_group_id=self.resolve_ref(spec.name),
                             description=rule.description)
            if rule.cidr is not None:
                rule_args["cidr_blocks"] = [rule.cidr]
            else:
                rule_args["source_security_group_id"] = self.resolve_ref(rule.source_group)
            self._create(f"{spec.name}-ingress-{i + 1}", aws.ec2.SecurityGroupRule, **rule_args)

    def build_datastore(self, store: DatastoreInstance):
        subnet_group = self._create(f"{store.name}-subnets", aws.rds.SubnetGroup,
                                    subnet_ids=[s.id for s in self.workload_subnets()])
        instance = self._create(store.name, aws.rds.Instance,
                                identifier=store.name,
                                engine=store.engine,
                                instance_class=store.instance_class,
                                allocated_storage=store.allocated_storage,
                                db_name=store.database_name,
                                username=store.username,
                                password=self.resolve_secret(store.password),
                                port=store.port,
                                backup_retention_period=store.backup_retention_days,
                                multi_az=store.multi_az,
                                performance_insights_enabled=store.performance_insights,
                                auto_minor_version_upgrade=store.auto_minor_version_upgrade,
                                db_subnet_group_name=subnet_group.name,
                                vpc_security_group_ids=[self.resolve_ref(g) for g in store.security_groups],
                                publicly_accessible=False,
                                copy_tags_to_snapshot=True,
                                final_snapshot_identifier=f"{store.name}-final")
        self.outputs[f"{store.name}-endpoint"] = instance.endpoint

    def build_cluster(self, spec: ComputeCluster):
        self._create(spec.name, aws.ecs.Cluster, name=spec.name)
        if spec.capacity is None:
            return

        capacity = spec.capacity
        role = self._create(f"{spec.name}-instance-role", aws.iam.Role,
                            assume_role_policy=assume_role_policy("ec2.amazonaws.com"))
        self._create(f"{spec.name}-instance-policy", aws.iam.RolePolicyAttachment,
                     role=role.name, policy_arn=ECS_INSTANCE_POLICY_ARN)
        profile = self._create(f"{spec.name}-instance-profile", aws.iam.InstanceProfile, role=role.name)
        image_id = aws.ssm.get_parameter_output(name=ECS_OPTIMIZED_AMI_PARAMETER).value

        template = self._create(f"{spec.name}-launch-template", aws.ec2.LaunchTemplate,
                                image_id=image_id,
                                instance_type=capacity.instance_type,
                                key_name=capacity.key_name,
                                user_data=render_user_data(spec.name, capacity.user_data),
                                iam_instance_profile=aws.ec2.LaunchTemplateIamInstanceProfileArgs(arn=profile.arn),
                                vpc_security_group_ids=[self.resolve_ref(g) for g in capacity.security_groups])
        group_tags = [aws.autoscaling.GroupTagArgs(key=k, value=v, propagate_at_launch=True)
                      for k, v in sorted(self.stack_tags().items())]
        self._create(f"{spec.name}-asg", aws.autoscaling.Group,
                     min_size=capacity.scaling.min_capacity,
                     max_size=capacity.scaling.max_capacity,
                     desired_capacity=capacity.scaling.desired_capacity,
                     vpc_zone_identifiers=[s.id for s in self.workload_subnets()],
                     launch_template=aws.autoscaling.GroupLaunchTemplateArgs(id=template.id, version="$Latest"),
                     tags=group_tags)

    def namespace(self, registration: ServiceRegistration) -> aws.servicediscovery.PrivateDnsNamespace:
        if registration.namespace not in self.namespaces:
            key = f"namespace-{registration.namespace.replace('.', '-')}"
            self.namespaces[registration.namespace] = self._create(
                key, aws.servicediscovery.PrivateDnsNamespace,
                name=registration.namespace,
                vpc=self.resolve_ref(registration.network))
        return self.namespaces[registration.namespace]

    def build_discovery_service(self, registration: ServiceRegistration):
        namespace = self.namespace(registration)
        records = [aws.servicediscovery.ServiceDnsConfigDnsRecordArgs(type=t, ttl=registration.dns_ttl)
                   for t in expand_record_types(registration.dns_record_type)]
        service_args = dict(
            name=registration.name,
            dns_config=aws.servicediscovery.ServiceDnsConfigArgs(
                namespace_id=namespace.id,
                dns_records=records,
                routing_policy="WEIGHTED" if registration.load_balancer else "MULTIVALUE"),
        )
        if not registration.load_balancer:
            # ECS reports task health for directly registered tasks
            service_args["health_check_custom_config"] = aws.servicediscovery.ServiceHealthCheckCustomConfigArgs()
        self.discovery_services[registration.name] = self._create(
            f"{registration.name}-discovery", aws.servicediscovery.Service, **service_args)

    def build_workload(self, workload: WorkloadDefinition):
        fargate = workload.launch_type == "FARGATE"
        log_group_args = mapper.to(aws.cloudwatch.LogGroupArgs).map(workload.logging, use_deepcopy=False,
                                                                    skip_none_values=True)
        log_group = self._create(f"{workload.name}-logs", aws.cloudwatch.LogGroup, args=log_group_args)

        environment = {k: self.resolve_value(v) for k, v in workload.environment.items()}
        for k, v in workload.environment.items():
            if isinstance(v, ConnectionUrl):
                self.outputs[f"{workload.name}-{k.lower()}"] = environment[k]
        region = self.settings.region
        container_definitions = pulumi.Output.all(
            self.resolve_image(workload.image),
            pulumi.Output.all(**environment) if environment else {},
            log_group.name,
        ).apply(lambda args: json.dumps([container_definition(workload, args[0], args[1], args[2], region)]))

        execution_role = self._create(f"{workload.name}-execution-role", aws.iam.Role,
                                      assume_role_policy=assume_role_policy("ecs-tasks.amazonaws.com"))
        self._create(f"{workload.name}-execution-policy", aws.iam.RolePolicyAttachment,
                     role=execution_role.name, policy_arn=ECS_TASK_EXECUTION_POLICY_ARN)
        task_role = self._create(f"{workload.name}-task-role", aws.iam.Role,
                                 assume_role_policy=assume_role_policy("ecs-tasks.amazonaws.com"))

        task_definition = self._create(f"{workload.name}-task", aws.ecs.TaskDefinition,
                                       family=workload.name,
                                       container_definitions=container_definitions,
                                       network_mode="awsvpc" if fargate else "bridge",
                                       requires_compatibilities=[workload.launch_type],
                                       cpu=str(workload.cpu) if fargate else None,
                                       memory=str(workload.memory_limit_mib) if fargate else None,
                                       execution_role_arn=execution_role.arn,
                                       task_role_arn=task_role.arn)

        service_args = dict(name=workload.name,
                            cluster=self.resolve_ref(workload.cluster, "arn"),
                            task_definition=task_definition.arn,
                            desired_count=workload.desired_count,
                            launch_type=workload.launch_type)
        opts = None
        if workload.load_balancer is not None:
            target_group, listener = self.build_load_balancer(workload)
            service_args["load_balancers"] = [aws.ecs.ServiceLoadBalancerArgs(
                target_group_arn=target_group.arn,
                container_name=workload.name,
                container_port=workload.port_mappings[0].container_port)]
            opts = pulumi.ResourceOptions(depends_on=[listener])
        if fargate:
            service_args["network_configuration"] = aws.ecs.ServiceNetworkConfigurationArgs(
                subnets=[s.id for s in self.workload_subnets()],
                security_groups=[self.resolve_ref(g) for g in workload.security_groups],
                assign_public_ip=workload.assign_public_ip)
        for registration in self.descriptor.registrations:
            if registration.workload == workload.name and not registration.load_balancer:
                registry_args = dict(registry_arn=self.discovery_services[registration.name].arn)
                if registration.dns_record_type == "SRV":
                    registry_args.update(container_name=workload.name,
                                         container_port=workload.port_mappings[0].container_port)
                service_args["service_registries"] = aws.ecs.ServiceServiceRegistriesArgs(**registry_args)
        self._create(workload.name, aws.ecs.Service, opts=opts, **service_args)

    def build_load_balancer(self, workload: WorkloadDefinition):
        spec = workload.load_balancer
        fargate = workload.launch_type == "FARGATE"
        subnets = self.subnets["public"] if spec.public else self.workload_subnets()
        alb = self._create(f"{workload.name}-alb", aws.lb.LoadBalancer,
                           internal=not spec.public,
                           load_balancer_type="application",
                           security_groups=[self.resolve_ref(g) for g in spec.security_groups],
                           subnets=[s.id for s in subnets])
        target_group = self._create(f"{workload.name}-tg", aws.lb.TargetGroup,
                                    port=workload.target_port,
                                    protocol="HTTP",
                                    target_type="ip" if fargate else "instance",
                                    vpc_id=self.resolve_ref(self.descriptor.network.name),
                                    health_check=aws.lb.TargetGroupHealthCheckArgs(
                                        path=spec.health_check_path, protocol="HTTP"))
        listener = self._create(f"{workload.name}-listener", aws.lb.Listener,
                                load_balancer_arn=alb.arn,
                                port=spec.listener_port,
                                protocol="HTTP",
                                default_actions=[aws.lb.ListenerDefaultActionArgs(
                                    type="forward", target_group_arn=target_group.arn)])
        self.outputs[f"{workload.name}-url"] = pulumi.Output.concat("http://", alb.dns_name)
        return target_group, listener

    def register_load_balancer(self, registration: ServiceRegistration):
        alb = self.resolve_ref(f"{registration.workload}-alb", "dns_name")
        self._create(f"{registration.name}-alias", aws.servicediscovery.Instance,
                     instance_id="load-balancer",
                     service_id=self.discovery_services[registration.name].id,
                     attributes={"AWS_ALIAS_DNS_NAME": alb})
