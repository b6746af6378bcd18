"""
Ship Deployment Agent
=====================

The daemon that runs on each ship and keeps its application container in
line with what HQ wants deployed.

What it does:
  1. Probe HQ every 5 minutes; skip the cycle if HQ is unreachable
  2. Send a heartbeat carrying the currently deployed version
  3. Receive pending deployments and process them one by one, in order
  4. For each: pull image → stop old container → start new one → verify
  5. Report Downloaded / Deployed / Failed back to HQ

Resilience:
  - HTTP calls and image pulls retry network failures with exponential
    backoff + jitter, inside an overall timeout (see resilience.py)
  - Cleanup and status-report failures are logged, never fatal
  - A failed cycle never stops the loop; the next one starts after 1 minute

Requirements:
  pip install requests docker tenacity

Usage:
  ship-agent --hq-url https://hq.example.com --ship-id ship-042
  python -m ship_agent --config /etc/ship-agent/config.json
"""

__version__ = "1.0.0"
