"""Built-in simulated resource catalogs and their provider factories.

``aws`` mirrors the topology of a classic load-balanced web cluster (AMI
lookup, default VPC and subnets, instances, launch configuration,
auto-scaling group, security group, load balancer, listener, listener rule,
target group). ``null`` offers an argument-free resource and a pass-through
data source, handy for wiring tests.

Only the shape of these types is modelled; no networking behaviour is.
"""

from __future__ import annotations

import fnmatch
import hashlib
import re
from typing import Any

from strataform.config import StrataSettings
from strataform.errors import ProviderError
from strataform.models.document import ResourceMode
from strataform.providers.base import ResourceSchema
from strataform.providers.simulated import SimulatedCloud, SimulatedProvider, SimulatedType

DEFAULT_REGION = "us-east-1"
ACCOUNT_ID = "123456789012"

_cloud_cache: dict[str, SimulatedCloud] = {}


# ---------------------------------------------------------------------------
# Seeded catalogs for data sources
# ---------------------------------------------------------------------------

IMAGES: list[dict[str, Any]] = [
    {
        "id": "ami-0c55b159cbfafe1f0",
        "name": "ubuntu/images/hvm-ssd/ubuntu-bionic-18.04-amd64-server-20190212",
        "owner_id": "099720109477",
        "architecture": "x86_64",
        "creation_date": "2019-02-12T00:00:00Z",
    },
    {
        "id": "ami-0b0f4c27a6f2a6e8c",
        "name": "ubuntu/images/hvm-ssd/ubuntu-focal-20.04-amd64-server-20230517",
        "owner_id": "099720109477",
        "architecture": "x86_64",
        "creation_date": "2023-05-17T00:00:00Z",
    },
    {
        "id": "ami-0fb653ca2d3203ac1",
        "name": "ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-20240207",
        "owner_id": "099720109477",
        "architecture": "x86_64",
        "creation_date": "2024-02-07T00:00:00Z",
    },
    {
        "id": "ami-07a3c6a2a9c2e6f1d",
        "name": "amzn2-ami-hvm-2.0.20240131-x86_64-gp2",
        "owner_id": "137112412989",
        "architecture": "x86_64",
        "creation_date": "2024-01-31T00:00:00Z",
    },
]

DEFAULT_VPC_ID = "vpc-0a1b2c3d4e5f60789"
SUBNETS: list[dict[str, Any]] = [
    {"id": "subnet-0a11", "vpc_id": DEFAULT_VPC_ID, "availability_zone": "a"},
    {"id": "subnet-0b22", "vpc_id": DEFAULT_VPC_ID, "availability_zone": "b"},
    {"id": "subnet-0c33", "vpc_id": DEFAULT_VPC_ID, "availability_zone": "c"},
]


def _filters(arguments: dict[str, Any]) -> list[dict[str, Any]]:
    raw = arguments.get("filter", [])
    if isinstance(raw, dict):
        raw = [raw]
    return [f for f in raw if isinstance(f, dict)]


def _matches(item: dict[str, Any], name: str, patterns: list[Any]) -> bool:
    value = str(item.get(name.replace("-", "_"), ""))
    return any(fnmatch.fnmatchcase(value, str(p)) for p in patterns)


# ---------------------------------------------------------------------------
# aws
# ---------------------------------------------------------------------------


def _region(config: dict[str, Any]) -> str:
    return str(config.get("region", DEFAULT_REGION))


def _arn(config: dict[str, Any], service: str, path: str) -> str:
    return f"arn:aws:{service}:{_region(config)}:{ACCOUNT_ID}:{path}"


def _private_ip(resource_id: str) -> str:
    digest = hashlib.sha256(resource_id.encode("utf-8")).digest()
    return f"10.0.{digest[0]}.{digest[1] % 254 + 1}"


def _instance_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    ip = _private_ip(rid)
    return {
        "arn": _arn(config, "ec2", f"instance/{rid}"),
        "private_ip": ip,
        "public_ip": "54." + ip.split(".", 1)[1],
        "public_dns": f"ec2-{rid}.{_region(config)}.compute.amazonaws.com",
    }


def _security_group_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    return {
        "arn": _arn(config, "ec2", f"security-group/{rid}"),
        "owner_id": ACCOUNT_ID,
        "name": args.get("name", rid),
    }


def _launch_configuration_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    name = args.get("name") or f"{args.get('name_prefix', 'terraform-')}{rid.split('-', 1)[1]}"
    return {
        "arn": _arn(config, "autoscaling", f"launchConfiguration:{rid}:launchConfigurationName/{name}"),
        "name": name,
    }


def _asg_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    name = args.get("name", rid)
    return {
        "arn": _arn(config, "autoscaling", f"autoScalingGroup:{rid}:autoScalingGroupName/{name}"),
        "name": name,
    }


def _lb_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    name = args.get("name", rid)
    return {
        "arn": _arn(config, "elasticloadbalancing", f"loadbalancer/app/{name}/{rid}"),
        "arn_suffix": f"app/{name}/{rid}",
        "dns_name": f"{name}-{rid.split('-', 1)[1]}.{_region(config)}.elb.amazonaws.com",
        "zone_id": "Z35SXDOTRQ7X7K",
    }


def _target_group_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    name = args.get("name", rid)
    return {
        "arn": _arn(config, "elasticloadbalancing", f"targetgroup/{name}/{rid}"),
        "arn_suffix": f"targetgroup/{name}/{rid}",
    }


def _listener_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    return {"arn": f"{args.get('load_balancer_arn', '')}/listener/{rid}".replace("loadbalancer", "listener", 1)}


def _listener_rule_attrs(rid: str, args: dict[str, Any], config: dict[str, Any]) -> dict[str, Any]:
    return {"arn": f"{args.get('listener_arn', '')}/rule/{rid}".replace("listener", "listener-rule", 1)}


def _validate_instance_type(args: dict[str, Any]) -> list[str]:
    value = args.get("instance_type")
    if isinstance(value, str) and not re.fullmatch(r"[a-z][a-z0-9]*\.[a-z0-9]+", value):
        return [f"invalid instance_type {value!r}"]
    return []


def _validate_asg(args: dict[str, Any]) -> list[str]:
    if "min_size" not in args or "max_size" not in args:
        return []
    problems = []
    try:
        low, high = int(args["min_size"]), int(args["max_size"])
    except (TypeError, ValueError):
        return ["min_size and max_size must be numbers"]
    if low < 0 or high < low:
        problems.append(f"invalid size range min_size={low} max_size={high}")
    desired = args.get("desired_capacity")
    if desired is not None and not low <= int(desired) <= high:
        problems.append(f"desired_capacity {desired} outside [{low}, {high}]")
    return problems


def _validate_port(args: dict[str, Any]) -> list[str]:
    port = args.get("port")
    if port is None:
        return []
    try:
        number = int(port)
    except (TypeError, ValueError):
        return [f"invalid port {port!r}"]
    return [] if 0 < number < 65536 else [f"port {number} out of range"]


def _query_ami(args: dict[str, Any], cloud: SimulatedCloud, config: dict[str, Any]) -> dict[str, Any]:
    candidates = list(IMAGES)
    owners = args.get("owners")
    if owners:
        candidates = [i for i in candidates if i["owner_id"] in owners or "self" in owners]
    for flt in _filters(args):
        candidates = [i for i in candidates if _matches(i, str(flt.get("name", "")), list(flt.get("values", [])))]
    if args.get("name_regex"):
        pattern = re.compile(str(args["name_regex"]))
        candidates = [i for i in candidates if pattern.search(i["name"])]
    if not candidates:
        raise ProviderError("your query returned no results; change your search criteria")
    if len(candidates) > 1 and not args.get("most_recent", False):
        raise ProviderError(
            "your query returned more than one result; set most_recent or narrow the search"
        )
    image = max(candidates, key=lambda i: i["creation_date"])
    return dict(image, image_id=image["id"])


def _query_vpc(args: dict[str, Any], cloud: SimulatedCloud, config: dict[str, Any]) -> dict[str, Any]:
    wanted = args.get("id")
    if wanted and wanted != DEFAULT_VPC_ID:
        raise ProviderError(f"no VPC with id {wanted!r}")
    return {
        "id": DEFAULT_VPC_ID,
        "arn": _arn(config, "ec2", f"vpc/{DEFAULT_VPC_ID}"),
        "cidr_block": "172.31.0.0/16",
        "default": True,
    }


def _query_subnets(args: dict[str, Any], cloud: SimulatedCloud, config: dict[str, Any]) -> dict[str, Any]:
    subnets = [dict(s, availability_zone=_region(config) + s["availability_zone"]) for s in SUBNETS]
    for flt in _filters(args):
        subnets = [s for s in subnets if _matches(s, str(flt.get("name", "")), list(flt.get("values", [])))]
    ids = [s["id"] for s in subnets]
    return {"id": _region(config), "ids": ids}


AWS_TYPES: list[SimulatedType] = [
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_ami",
            mode=ResourceMode.DATA,
            optional=["most_recent", "owners", "filter", "name_regex"],
            exported=["name", "owner_id", "architecture", "creation_date", "image_id"],
        ),
        query=_query_ami,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_vpc",
            mode=ResourceMode.DATA,
            optional=["default", "id", "tags"],
            exported=["arn", "cidr_block"],
        ),
        query=_query_vpc,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_subnets",
            mode=ResourceMode.DATA,
            optional=["filter", "tags"],
            exported=["ids"],
        ),
        query=_query_subnets,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_instance",
            required=["ami", "instance_type"],
            optional=["subnet_id", "vpc_security_group_ids", "user_data", "key_name", "tags"],
            force_new=["ami", "subnet_id", "user_data", "key_name"],
            exported=["arn", "private_ip", "public_ip", "public_dns"],
            update_computed=["public_ip", "public_dns"],
        ),
        id_prefix="i",
        attributes=_instance_attrs,
        validator=_validate_instance_type,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_security_group",
            optional=["name", "description", "vpc_id", "ingress", "egress", "tags"],
            force_new=["name", "description", "vpc_id"],
            exported=["arn", "owner_id", "name"],
        ),
        id_prefix="sg",
        attributes=_security_group_attrs,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_launch_configuration",
            required=["image_id", "instance_type"],
            optional=["name", "name_prefix", "security_groups", "user_data", "key_name"],
            force_new=[
                "image_id", "instance_type", "name", "name_prefix",
                "security_groups", "user_data", "key_name",
            ],
            exported=["arn", "name"],
        ),
        id_prefix="lc",
        attributes=_launch_configuration_attrs,
        validator=_validate_instance_type,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_autoscaling_group",
            required=["min_size", "max_size"],
            optional=[
                "name", "launch_configuration", "desired_capacity", "vpc_zone_identifier",
                "availability_zones", "target_group_arns", "health_check_type",
                "health_check_grace_period", "tag", "tags",
            ],
            force_new=["name"],
            exported=["arn", "name"],
        ),
        id_prefix="asg",
        attributes=_asg_attrs,
        validator=_validate_asg,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_lb",
            optional=["name", "internal", "load_balancer_type", "security_groups", "subnets", "tags"],
            force_new=["name", "internal", "load_balancer_type"],
            exported=["arn", "arn_suffix", "dns_name", "zone_id"],
        ),
        id_prefix="lb",
        attributes=_lb_attrs,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_lb_target_group",
            optional=["name", "port", "protocol", "vpc_id", "health_check", "tags"],
            force_new=["name", "port", "protocol", "vpc_id"],
            exported=["arn", "arn_suffix"],
        ),
        id_prefix="tg",
        attributes=_target_group_attrs,
        validator=_validate_port,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_lb_listener",
            required=["load_balancer_arn", "port"],
            optional=["protocol", "default_action"],
            force_new=["load_balancer_arn"],
            exported=["arn"],
        ),
        id_prefix="lsn",
        attributes=_listener_attrs,
        validator=_validate_port,
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="aws_lb_listener_rule",
            required=["listener_arn", "action"],
            optional=["priority", "condition"],
            force_new=["listener_arn"],
            exported=["arn"],
        ),
        id_prefix="rule",
        attributes=_listener_rule_attrs,
    ),
]


# ---------------------------------------------------------------------------
# null
# ---------------------------------------------------------------------------


def _query_null_data(args: dict[str, Any], cloud: SimulatedCloud, config: dict[str, Any]) -> dict[str, Any]:
    inputs = dict(args.get("inputs", {}))
    return {"id": "static", "outputs": inputs}


NULL_TYPES: list[SimulatedType] = [
    SimulatedType(
        schema_=ResourceSchema(
            type_name="null_resource",
            optional=["triggers"],
            force_new=["triggers"],
        ),
        id_prefix="null",
    ),
    SimulatedType(
        schema_=ResourceSchema(
            type_name="null_data_source",
            mode=ResourceMode.DATA,
            optional=["inputs"],
            exported=["outputs"],
        ),
        query=_query_null_data,
    ),
]


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _shared_cloud(settings: StrataSettings) -> SimulatedCloud:
    """One cloud per backing file, shared by every simulated provider."""
    key = str(settings.cloud_path.resolve())
    cloud = _cloud_cache.get(key)
    if cloud is None:
        cloud = _cloud_cache[key] = SimulatedCloud(settings.cloud_path)
    return cloud


def create_aws_provider(arguments: dict[str, Any], settings: StrataSettings) -> SimulatedProvider:
    """Factory for the built-in simulated ``aws`` provider."""
    return SimulatedProvider("aws", AWS_TYPES, cloud=_shared_cloud(settings), config=arguments)


def create_null_provider(arguments: dict[str, Any], settings: StrataSettings) -> SimulatedProvider:
    """Factory for the built-in ``null`` provider."""
    return SimulatedProvider("null", NULL_TYPES, cloud=_shared_cloud(settings), config=arguments)


BUILTIN_FACTORIES = {
    "aws": create_aws_provider,
    "null": create_null_provider,
}
