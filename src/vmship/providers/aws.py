"""AWS provider backed by boto3 (EC2, ECR and IAM)."""

import json
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from vmship.providers.base import ProviderClient, ProviderResult
from vmship.state.models import ResourceKind
from vmship.utils.errors import (
    ErrorCategory,
    ErrorContext,
    ProviderError,
    ProviderTimeoutError,
    ResourceNotFoundError,
)
from vmship.utils.logging import get_logger

logger = get_logger(__name__)

# Tag carrying the engine-managed name of every resource
NAME_TAG = "Name"
MANAGED_TAG = "vmship:managed"

DEFAULT_ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}

# Keys each kind can change in place; any other changed key needs a replacement
UPDATABLE_KEYS = {
    ResourceKind.COMPUTE_INSTANCE: {"name", "instance_type", "security_group_ids", "tags"},
    ResourceKind.SECURITY_GROUP: {"ingress", "tags"},
    ResourceKind.REPOSITORY: {"tag_mutability", "scan_on_push", "tags"},
    ResourceKind.IAM_ROLE: {"assume_role_policy", "description", "managed_policies", "tags"},
}

# EC2 client tokens are limited to 64 ASCII characters
MAX_CLIENT_TOKEN_LENGTH = 64

NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidGroup.NotFound",
    "RepositoryNotFoundException",
    "NoSuchEntity",
}

RETRYABLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "InternalError",
    "InternalFailure",
    "RequestTimeout",
    "InvalidParameterValue.IamInstanceProfile",
}

ERROR_SUGGESTIONS = {
    "UnauthorizedOperation": ["Add the required IAM permission for this operation"],
    "AccessDenied": ["Check IAM policies attached to your user/role"],
    "AccessDeniedException": ["Check IAM policies attached to your user/role"],
    "InvalidGroup.Duplicate": ["Choose a different security group name or delete the existing group"],
    "RepositoryAlreadyExistsException": ["Choose a different repository name or delete the existing repository"],
    "EntityAlreadyExists": ["Choose a different role name or delete the existing role"],
    "InstanceLimitExceeded": ["Request a service limit increase through AWS Support"],
    "InvalidAMIID.NotFound": ["Verify the image_id exists in the configured region"],
}


def translate_client_error(error: Exception, context: ErrorContext) -> ProviderError:
    """Convert a botocore exception into a ProviderError.

    Args:
        error: Exception raised by a boto3 call
        context: Where the error occurred

    Returns:
        ProviderError (or subclass) carrying the AWS code and retryability
    """
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "Unknown")
        message = details.get("Message", str(error))
        context.provider_code = code
        context.request_id = error.response.get("ResponseMetadata", {}).get("RequestId")

        if code in NOT_FOUND_CODES:
            return ResourceNotFoundError(
                f"AWS resource not found ({code}): {message}", context=context, cause=error
            )
        return ProviderError(
            f"AWS error ({code}): {message}",
            retryable=code in RETRYABLE_CODES,
            context=context,
            cause=error,
            suggestions=ERROR_SUGGESTIONS.get(code, [f"AWS Request ID: {context.request_id}"]),
        )

    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return ProviderTimeoutError(f"AWS request timed out: {error}", context=context, cause=error)

    if isinstance(error, EndpointConnectionError):
        return ProviderError(
            f"Could not reach AWS endpoint: {error}",
            retryable=True,
            category=ErrorCategory.NETWORK,
            context=context,
            cause=error,
            suggestions=["Check network connectivity and the configured region"],
        )

    if isinstance(error, NoCredentialsError):
        return ProviderError(
            "No AWS credentials found",
            context=context,
            cause=error,
            suggestions=["Configure AWS credentials using: aws configure"],
        )

    return ProviderError(f"AWS client error: {error}", context=context, cause=error)


class AWSProvider(ProviderClient):
    """Provisions the four resource kinds on AWS.

    Attribute names are snake_case and map onto the boto3 request
    parameters of the matching service call.
    """

    name = "aws"

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        session: Optional[boto3.Session] = None,
        wait_for_instances: bool = True,
    ):
        """
        Initialize AWSProvider.

        Args:
            region: AWS region
            profile: AWS profile name
            session: Preconfigured boto3 session (overrides region and profile)
            wait_for_instances: Wait for new instances to reach ``running``
        """
        if session is None:
            kwargs = {}
            if profile:
                kwargs["profile_name"] = profile
            if region:
                kwargs["region_name"] = region
            session = boto3.Session(**kwargs)
        self.session = session
        self.wait_for_instances = wait_for_instances
        self._boto_config = Config(
            retries={"mode": "adaptive", "max_attempts": 5},
            connect_timeout=10,
            read_timeout=60,
        )
        # boto3 clients are thread-safe once created
        self.ec2 = session.client("ec2", config=self._boto_config)
        self.ecr = session.client("ecr", config=self._boto_config)
        self.iam = session.client("iam", config=self._boto_config)

    def create(
        self,
        kind: ResourceKind,
        attributes: Dict[str, Any],
        token: Optional[str] = None
    ) -> ProviderResult:
        context = ErrorContext(resource_kind=kind.value, operation="create")
        if kind == ResourceKind.COMPUTE_INSTANCE:
            return self._call(lambda: self._create_instance(attributes, token), context)

        # Names are unique for the other kinds: a repeated create fails with
        # an AlreadyExists error instead of making a second resource
        handler = {
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.REPOSITORY: self._create_repository,
            ResourceKind.IAM_ROLE: self._create_role,
        }[kind]
        return self._call(lambda: handler(attributes), context)

    def update(self, remote_id: str, kind: ResourceKind, diff: Dict[str, Any]) -> Dict[str, Any]:
        context = ErrorContext(resource_kind=kind.value, operation="update", remote_id=remote_id)
        fixed = sorted(set(diff) - UPDATABLE_KEYS[kind])
        if fixed:
            raise ProviderError(
                f"Cannot change {', '.join(fixed)} of {kind.value} {remote_id} in place",
                context=context,
                suggestions=[
                    "Revert the change, or replace the resource: remove it from the "
                    "configuration, apply, then declare it again",
                ],
            )

        handler = {
            ResourceKind.COMPUTE_INSTANCE: self._update_instance,
            ResourceKind.SECURITY_GROUP: self._update_security_group,
            ResourceKind.REPOSITORY: self._update_repository,
            ResourceKind.IAM_ROLE: self._update_role,
        }[kind]
        return self._call(lambda: handler(remote_id, diff), context)

    def delete(self, remote_id: str, kind: ResourceKind) -> None:
        handler = {
            ResourceKind.COMPUTE_INSTANCE: self._delete_instance,
            ResourceKind.SECURITY_GROUP: self._delete_security_group,
            ResourceKind.REPOSITORY: self._delete_repository,
            ResourceKind.IAM_ROLE: self._delete_role,
        }[kind]
        context = ErrorContext(resource_kind=kind.value, operation="delete", remote_id=remote_id)
        self._call(lambda: handler(remote_id), context)

    def _call(self, func: Callable[[], Any], context: ErrorContext) -> Any:
        """Run a handler, translating botocore exceptions."""
        try:
            return func()
        except (ClientError, BotoCoreError) as e:
            raise translate_client_error(e, context) from e

    # Compute instances

    def _create_instance(self, attributes: Dict[str, Any], token: Optional[str] = None) -> ProviderResult:
        params: Dict[str, Any] = {
            "ImageId": attributes["image_id"],
            "InstanceType": attributes.get("instance_type", "t3.micro"),
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": self._tags(attributes)}
            ],
        }
        if attributes.get("security_group_ids"):
            params["SecurityGroupIds"] = list(attributes["security_group_ids"])
        if attributes.get("subnet_id"):
            params["SubnetId"] = attributes["subnet_id"]
        if attributes.get("key_name"):
            params["KeyName"] = attributes["key_name"]
        if attributes.get("instance_profile"):
            params["IamInstanceProfile"] = {"Name": attributes["instance_profile"]}
        if attributes.get("user_data"):
            params["UserData"] = attributes["user_data"]
        if token:
            # EC2 returns the instance launched by the first request with this token
            params["ClientToken"] = token[:MAX_CLIENT_TOKEN_LENGTH]

        response = self.ec2.run_instances(**params)
        instance_id = response["Instances"][0]["InstanceId"]
        logger.info(f"Launched EC2 instance {instance_id}")

        if self.wait_for_instances:
            self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
        return ProviderResult(remote_id=instance_id, attributes=self._describe_instance(instance_id))

    def _describe_instance(self, instance_id: str) -> Dict[str, Any]:
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        instance = response["Reservations"][0]["Instances"][0]
        return {
            "public_ip": instance.get("PublicIpAddress"),
            "private_ip": instance.get("PrivateIpAddress"),
            "public_dns": instance.get("PublicDnsName"),
            "state": instance.get("State", {}).get("Name"),
        }

    def _update_instance(self, instance_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "security_group_ids" in diff:
            self.ec2.modify_instance_attribute(
                InstanceId=instance_id, Groups=list(diff["security_group_ids"] or [])
            )
        if "name" in diff and diff["name"]:
            self.ec2.create_tags(
                Resources=[instance_id], Tags=[{"Key": NAME_TAG, "Value": diff["name"]}]
            )
        if diff.get("instance_type"):
            # Instance type can only change while stopped
            self.ec2.stop_instances(InstanceIds=[instance_id])
            self.ec2.get_waiter("instance_stopped").wait(InstanceIds=[instance_id])
            self.ec2.modify_instance_attribute(
                InstanceId=instance_id, InstanceType={"Value": diff["instance_type"]}
            )
            self.ec2.start_instances(InstanceIds=[instance_id])
            self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])

        if "tags" in diff:
            self._sync_ec2_tags(instance_id, diff["tags"])
        return self._describe_instance(instance_id)

    def _delete_instance(self, instance_id: str) -> None:
        self.ec2.terminate_instances(InstanceIds=[instance_id])
        self.ec2.get_waiter("instance_terminated").wait(InstanceIds=[instance_id])
        logger.info(f"Terminated EC2 instance {instance_id}")

    # Security groups

    def _create_security_group(self, attributes: Dict[str, Any]) -> ProviderResult:
        params: Dict[str, Any] = {
            "GroupName": attributes["name"],
            "Description": attributes.get("description", f"Security group {attributes['name']}"),
            "TagSpecifications": [
                {"ResourceType": "security-group", "Tags": self._tags(attributes)}
            ],
        }
        if attributes.get("vpc_id"):
            params["VpcId"] = attributes["vpc_id"]

        group_id = self.ec2.create_security_group(**params)["GroupId"]
        ingress = self._ip_permissions(attributes.get("ingress", []))
        if ingress:
            self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=ingress)
        logger.info(f"Created security group {group_id}")
        return ProviderResult(remote_id=group_id, attributes={"group_id": group_id})

    def _update_security_group(self, group_id: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "ingress" in diff:
            response = self.ec2.describe_security_groups(GroupIds=[group_id])
            current = response["SecurityGroups"][0].get("IpPermissions", [])
            if current:
                self.ec2.revoke_security_group_ingress(GroupId=group_id, IpPermissions=current)
            desired = self._ip_permissions(diff["ingress"] or [])
            if desired:
                self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=desired)
        if "tags" in diff:
            self._sync_ec2_tags(group_id, diff["tags"])
        return {"group_id": group_id}

    def _delete_security_group(self, group_id: str) -> None:
        self.ec2.delete_security_group(GroupId=group_id)
        logger.info(f"Deleted security group {group_id}")

    @staticmethod
    def _ip_permissions(rules: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Convert ``{port, cidr, protocol}`` rules to EC2 IpPermissions."""
        permissions = []
        for rule in rules:
            from_port = int(rule.get("from_port", rule.get("port")))
            to_port = int(rule.get("to_port", rule.get("port")))
            permissions.append({
                "IpProtocol": rule.get("protocol", "tcp"),
                "FromPort": from_port,
                "ToPort": to_port,
                "IpRanges": [{"CidrIp": rule.get("cidr", "0.0.0.0/0")}],
            })
        return permissions

    # Container repositories

    def _create_repository(self, attributes: Dict[str, Any]) -> ProviderResult:
        response = self.ecr.create_repository(
            repositoryName=attributes["name"],
            imageTagMutability=attributes.get("tag_mutability", "MUTABLE"),
            imageScanningConfiguration={"scanOnPush": bool(attributes.get("scan_on_push", False))},
            tags=[{"Key": tag["Key"], "Value": tag["Value"]} for tag in self._tags(attributes)],
        )
        repository = response["repository"]
        logger.info(f"Created ECR repository {repository['repositoryName']}")
        return ProviderResult(
            remote_id=repository["repositoryName"],
            attributes={
                "repository_url": repository["repositoryUri"],
                "arn": repository["repositoryArn"],
            },
        )

    def _update_repository(self, name: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "tag_mutability" in diff:
            self.ecr.put_image_tag_mutability(
                repositoryName=name, imageTagMutability=diff["tag_mutability"] or "MUTABLE"
            )
        if "scan_on_push" in diff:
            self.ecr.put_image_scanning_configuration(
                repositoryName=name,
                imageScanningConfiguration={"scanOnPush": bool(diff["scan_on_push"])},
            )
        repository = self.ecr.describe_repositories(repositoryNames=[name])["repositories"][0]
        arn = repository["repositoryArn"]
        if "tags" in diff:
            current = self.ecr.list_tags_for_resource(resourceArn=arn).get("tags", [])
            stale = self._stale_tag_keys(current, diff["tags"])
            if stale:
                self.ecr.untag_resource(resourceArn=arn, tagKeys=stale)
            if diff["tags"]:
                self.ecr.tag_resource(resourceArn=arn, tags=self._user_tags(diff["tags"]))
        return {"repository_url": repository["repositoryUri"], "arn": arn}

    def _delete_repository(self, name: str) -> None:
        self.ecr.delete_repository(repositoryName=name, force=True)
        logger.info(f"Deleted ECR repository {name}")

    # IAM roles

    def _create_role(self, attributes: Dict[str, Any]) -> ProviderResult:
        name = attributes["name"]
        policy = attributes.get("assume_role_policy", DEFAULT_ASSUME_ROLE_POLICY)
        role = self.iam.create_role(
            RoleName=name,
            AssumeRolePolicyDocument=json.dumps(policy),
            Description=attributes.get("description", f"Role {name}"),
            Tags=self._tags(attributes),
        )["Role"]

        for policy_arn in attributes.get("managed_policies", []):
            self.iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)

        # Instances consume roles through an instance profile of the same name
        self.iam.create_instance_profile(InstanceProfileName=name)
        self.iam.add_role_to_instance_profile(InstanceProfileName=name, RoleName=name)
        logger.info(f"Created IAM role {name}")
        return ProviderResult(
            remote_id=name,
            attributes={"arn": role["Arn"], "instance_profile": name},
        )

    def _update_role(self, name: str, diff: Dict[str, Any]) -> Dict[str, Any]:
        if "assume_role_policy" in diff:
            policy = diff["assume_role_policy"] or DEFAULT_ASSUME_ROLE_POLICY
            self.iam.update_assume_role_policy(RoleName=name, PolicyDocument=json.dumps(policy))
        if "description" in diff:
            self.iam.update_role(RoleName=name, Description=diff["description"] or "")
        if "managed_policies" in diff:
            desired = set(diff["managed_policies"] or [])
            attached = self._attached_policies(name)
            for policy_arn in sorted(attached - desired):
                self.iam.detach_role_policy(RoleName=name, PolicyArn=policy_arn)
            for policy_arn in sorted(desired - attached):
                self.iam.attach_role_policy(RoleName=name, PolicyArn=policy_arn)
        if "tags" in diff:
            stale = self._stale_tag_keys(self.iam.list_role_tags(RoleName=name).get("Tags", []), diff["tags"])
            if stale:
                self.iam.untag_role(RoleName=name, TagKeys=stale)
            if diff["tags"]:
                self.iam.tag_role(RoleName=name, Tags=self._user_tags(diff["tags"]))
        role = self.iam.get_role(RoleName=name)["Role"]
        return {"arn": role["Arn"], "instance_profile": name}

    def _delete_role(self, name: str) -> None:
        for policy_arn in sorted(self._attached_policies(name)):
            self.iam.detach_role_policy(RoleName=name, PolicyArn=policy_arn)
        try:
            self.iam.remove_role_from_instance_profile(InstanceProfileName=name, RoleName=name)
            self.iam.delete_instance_profile(InstanceProfileName=name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "NoSuchEntity":
                raise
        self.iam.delete_role(RoleName=name)
        logger.info(f"Deleted IAM role {name}")

    def _attached_policies(self, name: str) -> set:
        paginator = self.iam.get_paginator("list_attached_role_policies")
        attached = set()
        for page in paginator.paginate(RoleName=name):
            attached.update(policy["PolicyArn"] for policy in page["AttachedPolicies"])
        return attached

    # Tags

    def _sync_ec2_tags(self, resource_id: str, tags: Optional[Dict[str, Any]]) -> None:
        """Make the user tags of an EC2 resource match tags."""
        response = self.ec2.describe_tags(Filters=[{"Name": "resource-id", "Values": [resource_id]}])
        stale = self._stale_tag_keys(response.get("Tags", []), tags)
        if stale:
            self.ec2.delete_tags(Resources=[resource_id], Tags=[{"Key": key} for key in stale])
        if tags:
            self.ec2.create_tags(Resources=[resource_id], Tags=self._user_tags(tags))

    @staticmethod
    def _stale_tag_keys(current: List[Dict[str, str]], tags: Optional[Dict[str, Any]]) -> List[str]:
        """Keys of current user tags that are no longer declared."""
        keep = set(tags or {}) | {NAME_TAG, MANAGED_TAG}
        return sorted(tag["Key"] for tag in current if tag["Key"] not in keep)

    @staticmethod
    def _user_tags(tags: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
        return [{"Key": str(k), "Value": str(v)} for k, v in sorted((tags or {}).items())]

    @classmethod
    def _tags(cls, attributes: Dict[str, Any]) -> List[Dict[str, str]]:
        tags = cls._user_tags(attributes.get("tags"))
        if attributes.get("name"):
            tags.append({"Key": NAME_TAG, "Value": str(attributes["name"])})
        tags.append({"Key": MANAGED_TAG, "Value": "true"})
        return tags
