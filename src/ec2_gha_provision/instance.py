from dataclasses import dataclass, field

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ec2_gha_provision.errors import PreconditionError


@dataclass
class Ec2Instance:
    """The EC2 instance that hosts the runner.

    Parameters
    ----------
    instance_id : str
        The ID of the instance.
    region_name : str
        The region the instance lives in.
    client : optional
        A pre-built EC2 client. Created on first use when omitted.

    """

    instance_id: str
    region_name: str
    client: object = field(default=None, repr=False)

    def _ec2(self):
        if self.client is None:
            self.client = boto3.client("ec2", region_name=self.region_name)
        return self.client

    def describe(self) -> dict:
        """Return the instance description.

        Raises
        ------
        PreconditionError
            If the instance does not exist or cannot be described.

        """
        if not self.instance_id:
            raise PreconditionError("No instance ID provided, cannot locate the runner host.")
        if not self.region_name:
            raise PreconditionError("No region name provided, cannot locate the runner host.")
        try:
            response = self._ec2().describe_instances(InstanceIds=[self.instance_id])
        except ClientError as e:
            raise PreconditionError(
                f"Instance '{self.instance_id}' not found in region {self.region_name}: "
                f"{e.response['Error']['Code']}",
                hint="Check INSTANCE_ID, AWS_REGION and that the credentials allow ec2:DescribeInstances.",
            ) from e
        except BotoCoreError as e:
            raise PreconditionError(
                f"Cannot describe instance '{self.instance_id}' in region {self.region_name}: {e}",
                hint="Configure AWS credentials for the job (e.g. aws-actions/configure-aws-credentials) "
                     "and check AWS_REGION.",
            ) from e
        reservations = response.get("Reservations", [])
        if not reservations or not reservations[0]["Instances"]:
            raise PreconditionError(f"Instance '{self.instance_id}' not found in region {self.region_name}")
        return reservations[0]["Instances"][0]

    def state(self) -> str:
        return self.describe()["State"]["Name"]

    def ensure_running(self, start: bool = True, **kwargs) -> dict:
        """Make sure the instance is running, starting it if it is stopped.

        Parameters
        ----------
        start : bool
            Whether a stopped instance may be started.
        kwargs : dict
            Custom configuration options for the ``instance_running`` waiter.

        Returns
        -------
        dict
            The instance description once running.

        """
        description = self.describe()
        state = description["State"]["Name"]
        if state == "running":
            return description
        if state not in ("stopped", "stopping", "pending") or (state != "pending" and not start):
            raise PreconditionError(
                f"Instance '{self.instance_id}' is not running (state: {state})",
                hint=f"Start it with 'aws ec2 start-instances --instance-ids {self.instance_id} "
                     f"--region {self.region_name}'.",
            )
        ec2 = self._ec2()
        try:
            if state == "stopping":
                ec2.get_waiter("instance_stopped").wait(InstanceIds=[self.instance_id])
            if state != "pending":
                ec2.start_instances(InstanceIds=[self.instance_id])
            waiter = ec2.get_waiter("instance_running")
            # Pass custom config for the waiter
            if kwargs:
                waiter.wait(InstanceIds=[self.instance_id], WaiterConfig=kwargs)
            # Otherwise, use the default config
            else:
                waiter.wait(InstanceIds=[self.instance_id])
        except (ClientError, BotoCoreError) as e:
            raise PreconditionError(f"Instance '{self.instance_id}' did not reach running state: {e}") from e
        return self.describe()

    def public_address(self, description: dict = None) -> str:
        """Return the address SSH should connect to."""
        description = description or self.describe()
        address = description.get("PublicIpAddress") or description.get("PublicDnsName")
        if not address:
            raise PreconditionError(
                f"Instance '{self.instance_id}' has no public IP address",
                hint="Assign an Elastic IP or set RUNNER_HOST to a reachable private address.",
            )
        return address
