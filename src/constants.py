# Copyright 2022 Canonical Ltd.
# See LICENSE file for licensing details.

"""Literals for the PgBouncer HBA charm."""

PG_USER = "snap_daemon"
HBA_FILE_NAME = "pgb_hba.conf"
HBA_FILE_PERMS = 0o600
HBA_TEMPLATE = "templates/pgb_hba.conf.j2"

# Snap constants.
PGBOUNCER_SNAP_NAME = "charmed-pgbouncer"
SNAP_CURRENT_PATH = f"/var/snap/{PGBOUNCER_SNAP_NAME}/current"

PGB_CONF_DIR = f"{SNAP_CURRENT_PATH}/etc/pgbouncer"

CONFIG_ERROR_MESSAGE = "Configuration Error. Please check the logs"
