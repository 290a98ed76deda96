#!/usr/bin/env python3
# Copyright 2022 Canonical Ltd.
# See LICENSE file for licensing details.

"""Charmed PgBouncer host-based access rules, to run on machine charms."""

import logging
import os
import pwd
from typing import Optional

from jinja2 import Template
from ops import ActiveStatus, BlockedStatus, CharmBase, MaintenanceStatus
from ops.main import main

from config import CharmConfig
from constants import (
    CONFIG_ERROR_MESSAGE,
    HBA_FILE_NAME,
    HBA_FILE_PERMS,
    HBA_TEMPLATE,
    PG_USER,
    PGB_CONF_DIR,
)

logger = logging.getLogger(__name__)


class PgBouncerHbaCharm(CharmBase):
    """A class implementing the PgBouncer pgb_hba.conf generator."""

    def __init__(self, *args):
        super().__init__(*args)

        self.framework.observe(self.on.install, self._on_install)
        self.framework.observe(self.on.config_changed, self._on_config_changed)
        self.framework.observe(self.on.update_status, self._on_update_status)

    @property
    def hba_file_path(self) -> str:
        """Location of the rendered pgb_hba.conf."""
        return f"{PGB_CONF_DIR}/{self.app.name}/{HBA_FILE_NAME}"

    # =======================
    #  Charm Lifecycle Hooks
    # =======================

    def _on_install(self, _) -> None:
        """Renders the initial pgb_hba.conf."""
        os.makedirs(f"{PGB_CONF_DIR}/{self.app.name}", 0o700, exist_ok=True)
        self.render_hba_file()

    def _on_config_changed(self, _) -> None:
        """Config changed handler.

        Validates the declared rules and rewrites pgb_hba.conf. An invalid rule blocks the unit
        and leaves the previously rendered file untouched.
        """
        self.render_hba_file()

    def _on_update_status(self, _) -> None:
        self.update_status()

    def load_config(self) -> Optional[CharmConfig]:
        """Builds the validated charm configuration.

        Returns:
            The configuration, or None if it is invalid. The unit is blocked in that case.
        """
        try:
            return CharmConfig(**dict(self.config))
        except ValueError:
            self.unit.status = BlockedStatus(CONFIG_ERROR_MESSAGE)
            logger.exception("Invalid configuration")
            return None

    def configuration_check(self) -> bool:
        """Check that configuration is valid."""
        return self.load_config() is not None

    def update_status(self) -> None:
        """Update unit status based on the current configuration."""
        if self.configuration_check():
            self.unit.status = ActiveStatus()

    def render_hba_file(self) -> None:
        """Renders the declared access rules into pgb_hba.conf.

        Rules are validated as a whole before anything is written, so a malformed rule never
        results in a partially rendered file.
        """
        config = self.load_config()
        if config is None:
            return

        self.unit.status = MaintenanceStatus("updating PgBouncer access rules")
        fragments = config.fragments

        with open(HBA_TEMPLATE, "r") as file:
            template = Template(file.read(), trim_blocks=True)
        rendered = template.render(
            app_name=self.app.name,
            fragments=fragments,
            comments=config.hba_comments,
        )

        self.render_file(self.hba_file_path, rendered, HBA_FILE_PERMS)
        logger.info("rendered %d access rules to %s", len(fragments), self.hba_file_path)
        self.unit.status = ActiveStatus()

    # =================
    #  Charm Utilities
    # =================

    def render_file(self, path: str, content: str, perms: int) -> None:
        """Write content rendered from a template to a file.

        Args:
            path: the path to the file.
            content: the data to be written to the file.
            perms: access permission mask applied to the file using chmod (e.g. 0o600).
        """
        with open(path, "w+") as file:
            file.write(content)
        # Ensure correct permissions are set on the file.
        os.chmod(path, perms)
        # Get the uid/gid for the pgbouncer user.
        u = pwd.getpwnam(PG_USER)
        # Set the correct ownership for the file.
        os.chown(path, uid=u.pw_uid, gid=u.pw_gid)


if __name__ == "__main__":
    main(PgBouncerHbaCharm)
