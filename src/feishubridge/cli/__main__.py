"""Run the Feishu bridge CLI with ``python -m``.

Same commands as the ``feishu-bridge`` script, handy when the package is
importable but the script is not on PATH:

    python -m feishubridge.cli check --probe
    python -m feishubridge.cli run --agent mypackage.agent:MyAgent
"""

from feishubridge.cli.app import app

if __name__ == "__main__":
    app()
