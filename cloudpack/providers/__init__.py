"""Cloud providers.

Example:
    from cloudpack.providers import EC2Provider

    provider = EC2Provider(region="eu-west-1")
    for instance in provider.list_instances():
        print(instance.id, instance.state)
"""

from cloudpack.providers.aws import EC2Provider
from cloudpack.providers.base import (
    Instance,
    InstanceSpec,
    KeyPair,
    Provider,
    SecurityGroup,
)

__all__ = ["EC2Provider", "Instance", "InstanceSpec", "KeyPair", "Provider", "SecurityGroup"]
