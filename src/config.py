#!/usr/bin/env python3
# Copyright 2023 Canonical Ltd.
# See LICENSE file for licensing details.

"""Structured configuration for the PgBouncer HBA charm."""

import logging
from typing import List

from charms.pgbouncer_operator.v0.hba import HbaFragment, assemble_fragments, parse_hba_rules
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

logger = logging.getLogger(__name__)


class CharmConfig(BaseModel):
    """Manager for the structured configuration."""

    model_config = ConfigDict(extra="ignore")

    hba_rules: str = Field(default="{}")
    hba_comments: bool = Field(default=True)

    _fragments: List[HbaFragment] = PrivateAttr()

    @model_validator(mode="after")
    def hba_rules_values(self) -> "CharmConfig":
        """Check that every declared rule can be rendered, keeping the rendered rules."""
        self._fragments = assemble_fragments(parse_hba_rules(self.hba_rules))
        return self

    @property
    def fragments(self) -> List[HbaFragment]:
        """Rules declared in config, in the order they appear in pgb_hba.conf."""
        return list(self._fragments)
