# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_forward_auth

"""
PolicyResolver component mapping request hosts to application policies.
"""

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from coreason_forward_auth.config import ForwardAuthConfig
from coreason_forward_auth.models import ApplicationPolicy


class PolicyResolver:
    """
    Read-only lookup over the policies loaded at startup.

    Attributes:
        default (ApplicationPolicy): Returned for hosts without a dedicated policy.
    """

    def __init__(self, default: ApplicationPolicy, applications: Iterable[ApplicationPolicy] = ()) -> None:
        self.default = default
        self._policies: Mapping[str, ApplicationPolicy] = MappingProxyType({app.name: app for app in applications})

    @classmethod
    def from_config(cls, config: ForwardAuthConfig) -> "PolicyResolver":
        return cls(config.default_app, config.apps)

    def resolve(self, host: str | None) -> ApplicationPolicy:
        """
        Exact match on the host name; unknown or missing hosts get the default policy.

        Args:
            host: The forwarded host, e.g. "whoami.example.com".

        Returns:
            ApplicationPolicy: The matching policy.
        """
        if not host:
            return self.default
        return self._policies.get(host.strip().lower(), self.default)

    def __len__(self) -> int:
        return len(self._policies)


def is_opaque_audience(policy: ApplicationPolicy, userinfo_audience: str) -> bool:
    """True when the policy's access tokens are opaque and must not be verified locally."""
    return policy.audience.lower() == userinfo_audience.lower()
