"""wp-config.php rendering.

The file is always rendered as a whole from the site record and a salt set,
so a fallback rewrite and a direct SQLite render of the same site are
byte-identical.
"""

import re
import secrets

from pressbox.models import DatabaseEngine, Site

SALT_KEYS = [
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
]

SQLITE_DB_FILE = ".ht.sqlite"
SQLITE_PLUGIN_SLUG = "sqlite-database-integration"

_SALT_RE = re.compile(r"define\(\s*'([A-Z_]+)'\s*,\s*'((?:[^'\\]|\\.)*)'\s*\)")

DB_DROPIN = """<?php
/**
 * SQLite database drop-in managed by PressBox.
 *
 * Loads the SQLite Database Integration plugin in place of wpdb's MySQL driver.
 */

$pressbox_sqlite_db = __DIR__ . '/plugins/sqlite-database-integration/wp-includes/sqlite/db.php';

if ( file_exists( $pressbox_sqlite_db ) ) {
\trequire_once $pressbox_sqlite_db;
} else {
\twp_die(
\t\t'<h1>SQLite Database Integration Error</h1>' .
\t\t'<p>Expected the plugin at <code>' . $pressbox_sqlite_db . '</code></p>',
\t\t'SQLite Plugin Not Found',
\t\tarray( 'response' => 500 )
\t);
}
"""

DATABASE_DIR_GUARD = "<?php\n// Silence is golden.\n"


def php_quote(value: str) -> str:
    """Single-quoted PHP string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def generate_salts() -> dict[str, str]:
    return {key: secrets.token_urlsafe(48) for key in SALT_KEYS}


def parse_salts(config_text: str) -> dict[str, str] | None:
    """Extract the salt set from an existing wp-config.php.

    Returns:
        All eight salts, or None if any is missing
    """
    found = {}
    for key, value in _SALT_RE.findall(config_text):
        if key in SALT_KEYS:
            found[key] = re.sub(r"\\(.)", r"\1", value)
    if len(found) != len(SALT_KEYS):
        return None
    return found


def _define(name: str, value: str) -> str:
    return f"define( {php_quote(name)}, {php_quote(value)} );"


def _database_block(site: Site) -> str:
    db = site.database
    match db.engine:
        case DatabaseEngine.MYSQL | DatabaseEngine.MARIADB:
            lines = [
                f"// ** {db.engine.value} settings ** //",
                _define("DB_NAME", db.name),
                _define("DB_USER", db.user),
                _define("DB_PASSWORD", db.password),
                _define("DB_HOST", f"127.0.0.1:{_engine_port(site)}"),
                _define("DB_CHARSET", "utf8mb4"),
                _define("DB_COLLATE", ""),
            ]
        case DatabaseEngine.SQLITE:
            lines = [
                "// ** SQLite settings ** //",
                _define("DB_ENGINE", "sqlite"),
                "define( 'DB_DIR', __DIR__ . '/wp-content/database/' );",
                _define("DB_FILE", SQLITE_DB_FILE),
                # wpdb still reads these constants
                _define("DB_NAME", db.name),
                _define("DB_USER", ""),
                _define("DB_PASSWORD", ""),
                _define("DB_HOST", ""),
                _define("DB_CHARSET", "utf8mb4"),
                _define("DB_COLLATE", ""),
            ]
    return "\n".join(lines)


def _engine_port(site: Site) -> int:
    port = site.database.port
    if port is None:
        raise ValueError(f"Site {site.id} has no database port")
    return port


def render_wp_config(site: Site, salts: dict[str, str]) -> str:
    """Render the full wp-config.php for ``site``."""
    missing = [key for key in SALT_KEYS if key not in salts]
    if missing:
        raise ValueError(f"Missing salts: {', '.join(missing)}")

    salt_lines = "\n".join(_define(key, salts[key]) for key in SALT_KEYS)
    return f"""<?php
/**
 * WordPress configuration for {site.name}, generated by PressBox.
 *
 * Rewritten when the site's port or database backend changes.
 */

{_database_block(site)}

/** Authentication unique keys and salts. */
{salt_lines}

$table_prefix = 'wp_';

{_define("WP_HOME", site.url)}
{_define("WP_SITEURL", site.url)}

define( 'WP_DEBUG', true );
define( 'WP_DEBUG_LOG', true );
define( 'WP_DEBUG_DISPLAY', false );

if ( ! defined( 'ABSPATH' ) ) {{
\tdefine( 'ABSPATH', __DIR__ . '/' );
}}

require_once ABSPATH . 'wp-settings.php';
"""
