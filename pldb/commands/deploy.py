"""
Remote deploy of the PLDB site to an Ubuntu host.

Renders a provisioning script, runs it over ssh, then checks the site
answers from outside. The remote side serves a maintenance page while the
release is downloaded and installed, and finishes with a systemd unit that
keeps the site up across reboots.
"""

from __future__ import annotations

import argparse
import re
import shutil
import time
import urllib.error
import urllib.request
from typing import Optional

from pldb.build.errors import ExternalToolMissing
from pldb.build.maintenance import render_maintenance_page
from pldb.core.utils import log, run_cmd

DEFAULT_INSTALL_DIR = "/root/pldb"
DEFAULT_DEPLOY_PORT = 80
SERVICE_NAME = "pldb"
SERVER_LOG = "/root/pldb-server.log"
HEALTH_RETRIES = 12
HEALTH_INTERVAL = 5


# =============================================================================
# Remote Templates
# =============================================================================

SYSTEMD_UNIT = """[Unit]
Description=PLDB Server
After=network.target

[Service]
Type=simple
User=root
WorkingDirectory=__INSTALL_DIR__
ExecStart=/usr/bin/npx serve . -l __PORT__
Restart=on-failure
RestartSec=10
StandardOutput=append:__SERVER_LOG__
StandardError=append:__SERVER_LOG__

[Install]
WantedBy=multi-user.target
"""

# Runs on the remote host as `bash -s -- <repo-url>`
REMOTE_SCRIPT = r"""set -e

REPO_URL="$1"
INSTALL_DIR="__INSTALL_DIR__"
PORT=__PORT__
export DEBIAN_FRONTEND=noninteractive

echo ">>> Updating package lists..."
apt-get update -qq

echo ">>> Installing prerequisites..."
apt-get install -y -qq curl python3

echo ">>> Checking Node.js..."
if ! command -v node &> /dev/null; then
    echo "    Installing Node.js 20.x..."
    curl -fsSL https://deb.nodesource.com/setup_20.x | bash -
    apt-get install -y -qq nodejs
fi
echo ">>> Node.js version: $(node --version)"

echo ">>> Stopping existing __SERVICE__ service (if any)..."
systemctl stop __SERVICE__ 2>/dev/null || true

echo ">>> Setting up maintenance page on port $PORT..."
MAINTENANCE_DIR=$(mktemp -d)
cat > "$MAINTENANCE_DIR/index.html" << 'MAINTEOF'
__MAINTENANCE_PAGE__
MAINTEOF
python3 -m http.server --directory "$MAINTENANCE_DIR" "$PORT" > /dev/null 2>&1 &
MAINT_PID=$!
cleanup_maintenance() {
    kill $MAINT_PID 2>/dev/null || true
    wait $MAINT_PID 2>/dev/null || true
    rm -rf "$MAINTENANCE_DIR"
}
echo "    Maintenance server running (PID $MAINT_PID)"

echo ">>> Downloading pre-built site..."
RELEASE_URL="${REPO_URL%.git}/releases/download/latest/site.tar.gz"
echo "    Release URL: $RELEASE_URL"
rm -rf "$INSTALL_DIR"
mkdir -p "$INSTALL_DIR"
curl -fSL "$RELEASE_URL" -o /tmp/site.tar.gz

echo ">>> Extracting site..."
tar xzf /tmp/site.tar.gz -C "$INSTALL_DIR"
rm /tmp/site.tar.gz

echo ">>> Installing serve..."
cd "$INSTALL_DIR"
npm install --production

echo ">>> Stopping maintenance server..."
cleanup_maintenance

echo ">>> Creating systemd service..."
cat > /etc/systemd/system/__SERVICE__.service << 'SERVICEEOF'
__SYSTEMD_UNIT__
SERVICEEOF

echo ">>> Enabling and starting __SERVICE__ service..."
systemctl daemon-reload
systemctl enable __SERVICE__
systemctl restart __SERVICE__

echo ">>> Waiting for server to start..."
RETRY_COUNT=0
while [ $RETRY_COUNT -lt __RETRIES__ ]; do
    sleep __INTERVAL__
    if curl -s -o /dev/null -w "%{http_code}" "http://localhost:$PORT" | grep -q "200"; then
        echo "    Server responding on localhost:$PORT"
        break
    fi
    RETRY_COUNT=$((RETRY_COUNT + 1))
    echo "    Waiting... (attempt $RETRY_COUNT/__RETRIES__)"
done

if [ $RETRY_COUNT -eq __RETRIES__ ]; then
    echo "ERROR: Server did not respond after __RETRIES__ attempts"
    systemctl status __SERVICE__ --no-pager || true
    tail -50 __SERVER_LOG__ || true
    exit 1
fi

if command -v ufw &> /dev/null && ufw status | grep -q "Status: active"; then
    echo ">>> Opening firewall port $PORT..."
    ufw allow "$PORT/tcp"
fi

systemctl status __SERVICE__ --no-pager | head -10
"""


def render_systemd_unit(install_dir: str, port: int) -> str:
    return (
        SYSTEMD_UNIT.replace("__INSTALL_DIR__", install_dir)
        .replace("__PORT__", str(port))
        .replace("__SERVER_LOG__", SERVER_LOG)
    )


def render_remote_script(install_dir: str = DEFAULT_INSTALL_DIR, port: int = DEFAULT_DEPLOY_PORT) -> str:
    """Render the provisioning script piped to the remote shell."""
    page = render_maintenance_page(
        title="Maintenance",
        message="Down for maintenance. This page will refresh automatically.",
    )
    replacements = {
        "__MAINTENANCE_PAGE__": page.rstrip("\n"),
        "__SYSTEMD_UNIT__": render_systemd_unit(install_dir, port).rstrip("\n"),
        "__INSTALL_DIR__": install_dir,
        "__PORT__": str(port),
        "__SERVICE__": SERVICE_NAME,
        "__SERVER_LOG__": SERVER_LOG,
        "__RETRIES__": str(HEALTH_RETRIES),
        "__INTERVAL__": str(HEALTH_INTERVAL),
    }
    script = REMOTE_SCRIPT
    for key, value in replacements.items():
        script = script.replace(key, value)
    return script


# =============================================================================
# External Check
# =============================================================================


def fetch_page(url: str, timeout: float = 10.0) -> tuple[int, str]:
    """GET ``url`` and return (status, body). Status 0 means unreachable."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            return response.status, response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        return e.code, ""
    except (urllib.error.URLError, OSError):
        return 0, ""


def page_title(html: str) -> Optional[str]:
    match = re.search(r"<title>(.*?)</title>", html, re.IGNORECASE | re.DOTALL)
    return match.group(1).strip() if match else None


def check_external_access(ip_address: str, port: int) -> bool:
    """Check the deployed site from here. Returns True on HTTP 200."""
    url = f"http://{ip_address}" if port == 80 else f"http://{ip_address}:{port}"
    log.header("Testing external access")
    status, body = fetch_page(url)
    if status != 200:
        log.warning(f"Server returned HTTP {status or 'no response'}")
        log.info(f"The server may still be starting up. Try: curl {url}")
        return False

    log.success(f"Server is accessible at {url}")
    title = page_title(body)
    if title:
        log.info(f"Page title: {title}")
    return True


# =============================================================================
# Command
# =============================================================================


def deploy(ip_address: str, repo_url: str, install_dir: str, port: int) -> int:
    """Provision the host over ssh. Returns the remote script's exit status."""
    if shutil.which("ssh") is None:
        raise ExternalToolMissing("ssh", "install an OpenSSH client")

    remote_host = f"root@{ip_address}"
    log.header("PLDB Server Setup")
    log.table_row("Target:", remote_host, col1_width=12)
    log.table_row("Repository:", repo_url, col1_width=12)

    result = run_cmd(
        [
            "ssh", "-o", "StrictHostKeyChecking=no",
            remote_host,
            "bash", "-s", "--", repo_url,
        ],
        check=False,
        input=render_remote_script(install_dir, port),
    )
    return result.returncode


def cmd_deploy(args: argparse.Namespace) -> int:
    """Execute the deploy command."""
    try:
        returncode = deploy(args.ip_address, args.repo_url, args.install_dir, args.port)
    except KeyboardInterrupt:
        log.warning("Deploy interrupted")
        return 130
    except Exception as e:
        log.error(str(e))
        return 1

    if returncode != 0:
        log.error(f"Remote setup failed (exit {returncode})")
        return 1

    log.header("Setup Complete")
    log.info("Service commands:")
    log.table_row("View status:", f"systemctl status {SERVICE_NAME}", col1_width=14)
    log.table_row("View logs:", f"journalctl -u {SERVICE_NAME} -f", col1_width=14)
    log.table_row("Restart:", f"systemctl restart {SERVICE_NAME}", col1_width=14)

    time.sleep(2)
    check_external_access(args.ip_address, args.port)
    return 0


def add_deploy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("ip_address", help="Address of the Ubuntu host (logged in as root)")
    parser.add_argument(
        "repo_url",
        help="GitHub repo URL whose latest release holds site.tar.gz",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_DEPLOY_PORT,
        help=f"Public port (default: {DEFAULT_DEPLOY_PORT})",
    )
    parser.add_argument(
        "--install-dir",
        default=DEFAULT_INSTALL_DIR,
        help=f"Install location on the host (default: {DEFAULT_INSTALL_DIR})",
    )
