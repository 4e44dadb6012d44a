"""
Pytest configuration and shared fixtures.

- mocks: Pulumi engine mocks recording every registered resource and invoke
- config_data: config.yaml contents for a dev stack in ap-northeast-1
- settings: the same configuration as a Config
"""

import pulumi
import pytest

from config import to_config

SECRET_VALUE = "hunter2"
AMI_ID = "ami-0123456789abcdef0"
REPOSITORY_URL = "123456789012.dkr.ecr.ap-northeast-1.amazonaws.com/morning-code/sonarqube"
SECRET_SIG = "4dabf18193072939515e22adb298388d"


def plain(value):
    """Strip the secret wrapper the mock monitor leaves on secret inputs."""
    if isinstance(value, dict) and SECRET_SIG in value:
        return value["value"]
    return value


class SonarMocks(pulumi.runtime.Mocks):
    secret_value = SECRET_VALUE
    ami_id = AMI_ID
    repository_url = REPOSITORY_URL

    def __init__(self):
        self.created = []
        self.calls = []

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        if args.typ == "aws:rds/instance:Instance":
            outputs["address"] = f"{args.name}.abcdefghij.ap-northeast-1.rds.amazonaws.com"
            outputs["endpoint"] = f"{outputs['address']}:{int(args.inputs['port'])}"
        elif args.typ == "aws:lb/loadBalancer:LoadBalancer":
            outputs["dnsName"] = f"{args.name}.ap-northeast-1.elb.amazonaws.com"
        outputs.setdefault("arn", f"arn:aws:mock:::{args.name}")
        self.created.append((args.typ, args.name, args.inputs))
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        self.calls.append((args.token, dict(args.args)))
        if args.token == "aws:ssm/getParameter:getParameter":
            name = args.args["name"]
            value = AMI_ID if name.startswith("/aws/service/ecs/") else SECRET_VALUE
            return {"name": name, "value": value, "type": "SecureString"}
        if args.token == "aws:ecr/getRepository:getRepository":
            return {"name": args.args["name"], "repositoryUrl": REPOSITORY_URL}
        if args.token == "aws:index/getAvailabilityZones:getAvailabilityZones":
            return {"names": ["ap-northeast-1a", "ap-northeast-1c", "ap-northeast-1d"]}
        return {}

    def of(self, typ: str):
        """Return (name, inputs) for every registered resource of the given type token."""
        return [(name, inputs) for t, name, inputs in self.created if t == typ]

    def one(self, typ: str):
        found = self.of(typ)
        assert len(found) == 1, f"expected one {typ}, found {len(found)}"
        return found[0]


@pytest.fixture
def mocks():
    mocks = SonarMocks()
    pulumi.runtime.set_mocks(mocks, project="sonarqube-infra", stack="dev", preview=False)
    return mocks


@pytest.fixture
def config_data() -> dict:
    return {
        "team": "morningcode",
        "service": "sonarqube",
        "environment": "dev",
        "region": "ap-northeast-1",
        "availability_zones": ["ap-northeast-1a", "ap-northeast-1c"],
        "tags": {"ManagedBy": "pulumi"},
        "context": {"sonarRepositoryName": "morning-code/sonarqube"},
    }


@pytest.fixture
def settings(config_data):
    return to_config(config_data)
