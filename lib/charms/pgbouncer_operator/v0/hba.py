# Copyright 2024 Canonical Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""PgBouncer HBA Charm Library.

This charm library validates PgBouncer host-based access rules and renders each of them into a
single pgb_hba.conf line. Rendered rules are collected as fragments, which are ordered by their
order key before being written out by the charm.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ("local", "host", "hostssl", "hostnossl")
AUTH_METHODS = ("trust", "reject", "md5", "password", "peer", "cert", "ident")
DEFAULT_ORDER = "150"

# Keys accepted in a single rule declaration, mapped to declare_rule() arguments.
DECLARATION_KEYS = {
    "type": "connection_type",
    "database": "databases",
    "user": "users",
    "address": "address",
    "auth_method": "auth_method",
    "order": "order",
    "description": "description",
}

_ORDER_PATTERN = re.compile(r"^\d{3}$")
_WHITESPACE_PATTERN = re.compile(r"\s")


class HbaRuleError(ValueError):
    """Base error for an HBA rule that cannot be rendered."""


class InvalidConnectionTypeError(HbaRuleError):
    """Raised when the connection type is not one of CONNECTION_TYPES."""

    def __init__(self, value):
        self.value = value
        super().__init__(
            f"invalid connection type {value!r}, expected one of {', '.join(CONNECTION_TYPES)}"
        )


class MissingAddressError(HbaRuleError):
    """Raised when a host rule has no address."""

    def __init__(self, connection_type: str):
        self.connection_type = connection_type
        super().__init__(f"an address is required for {connection_type} rules")


class InvalidAuthMethodError(HbaRuleError):
    """Raised when the auth method is not one of AUTH_METHODS."""

    def __init__(self, value):
        self.value = value
        super().__init__(
            f"invalid auth method {value!r}, expected one of {', '.join(AUTH_METHODS)}"
        )


class DuplicateRuleError(HbaRuleError):
    """Raised when two fragments share the same rule name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"rule {name!r} is declared more than once")


class HbaFragment(NamedTuple):
    """A rendered rule, ready to be placed in pgb_hba.conf."""

    name: str
    line: str
    order: str
    description: str


def _check_field(value: str, field_name: str) -> str:
    """Rejects values that would split into more than one pgb_hba.conf field."""
    if _WHITESPACE_PATTERN.search(value):
        raise HbaRuleError(f"{field_name} must not contain whitespace, got {value!r}")
    return value


def _join(value: Union[str, Sequence[str]], field_name: str) -> str:
    """Encodes a list of names into a comma-separated string, passing scalars through."""
    if isinstance(value, (list, tuple)):
        if not all(isinstance(item, str) for item in value):
            raise HbaRuleError(f"{field_name} must only contain strings")
        value = ",".join(value)
    if not isinstance(value, str):
        raise HbaRuleError(f"{field_name} must be a string or a list of strings")
    if not value:
        raise HbaRuleError(f"{field_name} must not be empty")
    return _check_field(value, field_name)


def _normalize_order(name: str, order) -> str:
    if isinstance(order, int) and not isinstance(order, bool):
        order = f"{order:03d}"
    if not isinstance(order, str):
        raise HbaRuleError(f"order of rule {name!r} must be a string, got {order!r}")
    if not _ORDER_PATTERN.match(order):
        logger.warning("rule %s uses non-canonical order %r, sorting it as a string", name, order)
    return order


@dataclass(frozen=True)
class HbaRule:
    """A single access rule for pgb_hba.conf.

    The rule is validated when constructed, so an HbaRule instance can always be rendered.
    Database and user lists are stored in their comma-separated form, and integer order keys
    are zero-padded to three digits.
    """

    name: str
    connection_type: str
    auth_method: str
    databases: Union[str, Sequence[str]] = "all"
    users: Union[str, Sequence[str]] = "all"
    address: Optional[str] = None
    description: Optional[str] = None
    order: str = DEFAULT_ORDER
    line: str = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.connection_type not in CONNECTION_TYPES:
            raise InvalidConnectionTypeError(self.connection_type)
        if self.connection_type.startswith("host") and not self.address:
            raise MissingAddressError(self.connection_type)
        if self.auth_method not in AUTH_METHODS:
            raise InvalidAuthMethodError(self.auth_method)

        # Frozen dataclass, so normalised values have to be set through object.__setattr__.
        object.__setattr__(self, "databases", _join(self.databases, "databases"))
        object.__setattr__(self, "users", _join(self.users, "users"))
        object.__setattr__(self, "order", _normalize_order(self.name, self.order))

        if self.description is None:
            object.__setattr__(self, "description", self.name)
        if not isinstance(self.description, str):
            raise HbaRuleError(f"description of rule {self.name!r} must be a string")
        # The description becomes a comment line, anything after a line break would be a rule.
        if "\n" in self.description or "\r" in self.description:
            raise HbaRuleError(f"description of rule {self.name!r} must be a single line")

        if self.connection_type == "local":
            if self.address:
                logger.warning("ignoring address %s on local rule %s", self.address, self.name)
            object.__setattr__(self, "address", None)
        else:
            if not isinstance(self.address, str):
                raise HbaRuleError(f"address of rule {self.name!r} must be a string")
            _check_field(self.address, "address")
        object.__setattr__(self, "line", self.render())

    def render(self) -> str:
        """Returns the pgb_hba.conf line for this rule."""
        fields = [self.connection_type, self.databases, self.users]
        if self.connection_type != "local":
            fields.append(self.address)
        fields.append(self.auth_method)
        return " ".join(fields)

    @property
    def fragment(self) -> HbaFragment:
        """The rendered rule, tagged with its name and order key."""
        return HbaFragment(self.name, self.line, self.order, self.description)


def declare_rule(
    name: str,
    connection_type: str,
    auth_method: str,
    databases: Union[str, Sequence[str]] = "all",
    users: Union[str, Sequence[str]] = "all",
    address: Optional[str] = None,
    description: Optional[str] = None,
    order: Union[str, int] = DEFAULT_ORDER,
) -> HbaFragment:
    """Validates a single access rule and renders it.

    Args:
        name: unique identifier of the rule.
        connection_type: one of local, host, hostssl or hostnossl.
        auth_method: one of trust, reject, md5, password, peer, cert or ident.
        databases: "all", "sameuser", an @-prefixed file reference, or a list of database names.
        users: "all", an @-prefixed file reference, or a list of usernames.
        address: CIDR address range, required for host rules and ignored for local rules.
        description: single-line label emitted as a comment above the rule. Defaults to the name.
        order: key deciding the position of the rule in the final file. Integers are
            zero-padded to three digits.

    Returns:
        The rendered fragment.

    Raises:
        InvalidConnectionTypeError, MissingAddressError, InvalidAuthMethodError: the rule is
            malformed. Checks happen in this order and stop at the first failure.
        HbaRuleError: a field is empty, contains whitespace or has the wrong type.
    """
    rule = HbaRule(
        name=name,
        connection_type=connection_type,
        auth_method=auth_method,
        databases=databases,
        users=users,
        address=address,
        description=description,
        order=order,
    )
    logger.debug("declared hba rule %s: %s", name, rule.line)
    return rule.fragment


def parse_hba_rules(raw: str) -> List[HbaFragment]:
    """Parses rule declarations into fragments, in declaration order.

    Args:
        raw: a JSON object mapping rule names to declarations, for example
            '{"app": {"type": "local", "database": ["app"], "user": "app", "auth_method": "peer"}}'

    Returns:
        A list of fragments, one per declaration.
    """
    try:
        declarations = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise HbaRuleError(f"hba rules are not valid JSON: {e}") from e
    if not isinstance(declarations, dict):
        raise HbaRuleError("hba rules must be a JSON object keyed by rule name")

    fragments = []
    for name, declaration in declarations.items():
        if not isinstance(declaration, dict):
            raise HbaRuleError(f"rule {name!r} must be a JSON object")
        unknown = set(declaration) - set(DECLARATION_KEYS)
        if unknown:
            raise HbaRuleError(f"rule {name!r} has unknown keys: {', '.join(sorted(unknown))}")
        for required in ("type", "auth_method"):
            if required not in declaration:
                raise HbaRuleError(f"rule {name!r} is missing {required}")
        kwargs: Dict = {DECLARATION_KEYS[key]: value for key, value in declaration.items()}
        fragments.append(declare_rule(name, **kwargs))
    return fragments


def assemble_fragments(fragments: Iterable[HbaFragment]) -> List[HbaFragment]:
    """Orders fragments for pgb_hba.conf.

    Fragments are sorted by order key as strings. The sort is stable, so rules sharing an order
    key keep the order they were declared in - PgBouncer uses the first rule that matches.

    Raises:
        DuplicateRuleError: two fragments have the same name.
    """
    fragments = list(fragments)
    seen = set()
    for fragment in fragments:
        if fragment.name in seen:
            raise DuplicateRuleError(fragment.name)
        seen.add(fragment.name)
    return sorted(fragments, key=lambda fragment: fragment.order)
