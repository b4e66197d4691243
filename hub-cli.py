#!/usr/bin/env python3
import click
import requests
import json
import os
import time
from tabulate import tabulate

CONFIG_FILE = os.path.expanduser("~/.agenthub/config.json")

STATUS_COLORS = {
    'paid': 'cyan',
    'in_progress': 'blue',
    'delivered': 'magenta',
    'disputed': 'yellow',
    'completed': 'green',
    'refunded': 'red',
    'failed': 'red',
}


def load_config():
    if not os.path.exists(CONFIG_FILE):
        return {}
    with open(CONFIG_FILE, 'r') as f:
        return json.load(f)


def save_config(config):
    os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
    with open(CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=4)


def _relay_url(config):
    return config.get('relay_url', 'http://localhost:5005')


def _auth_headers(config):
    api_key = config.get('api_key')
    if not api_key:
        raise click.ClickException("No API key saved. Run 'hub-cli register' or 'hub-cli init --api-key'.")
    return {"Authorization": f"Bearer {api_key}"}


def _report(resp, success_message=None):
    """Print the relay's error or return the decoded body."""
    try:
        body = resp.json()
    except ValueError:
        body = {"error": resp.text}
    if resp.status_code >= 400:
        click.echo(click.style("Failed!", fg='red') + f" [{resp.status_code}] {body.get('error')}")
        if body.get('current_status'):
            click.echo(f"Current status: {body['current_status']}")
        return None
    if success_message:
        click.echo(click.style("Success!", fg='green') + f" {success_message}")
    return body


def _styled_status(status):
    return click.style(status.upper(), fg=STATUS_COLORS.get(status, 'white'))


@click.group()
def cli():
    """Agent Hub CLI - agent and operator interface to the relay"""
    pass


@cli.command()
@click.option('--url', default='http://localhost:5005', help='Relay URL')
@click.option('--agent-id', prompt='Agent ID', help='Your Agent ID')
@click.option('--api-key', default=None, help='Existing API key')
def init(url, agent_id, api_key):
    """Initialize CLI configuration."""
    config = load_config()
    config['relay_url'] = url
    config['agent_id'] = agent_id
    if api_key:
        config['api_key'] = api_key
    save_config(config)
    click.echo(f"Configuration saved to {CONFIG_FILE}")


@cli.command()
@click.option('--wallet', prompt='Payout wallet', help='0x address that receives payments')
@click.option('--name', default=None)
@click.option('--webhook-url', default=None, help='Where paid jobs are pushed')
def register(wallet, name, webhook_url):
    """Register the configured agent and store its API key."""
    config = load_config()
    agent_id = config.get('agent_id')
    if not agent_id:
        raise click.ClickException("Run 'hub-cli init' first.")

    try:
        resp = requests.post(f"{_relay_url(config)}/api/agents", json={
            "agent_id": agent_id,
            "wallet_address": wallet,
            "name": name,
            "webhook_url": webhook_url,
        })
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")

    body = _report(resp, f"Agent {agent_id} registered.")
    if body:
        config['api_key'] = body['api_key']
        save_config(config)
        click.echo("API key saved. It is not shown again.")
        for warning in body.get('warnings', []):
            click.echo(click.style(warning, fg='yellow'))


@cli.command()
@click.option('--status', default=None, help='Filter by status')
def jobs(status):
    """List jobs assigned to this agent."""
    config = load_config()
    agent_id = config.get('agent_id')
    params = {"status": status} if status else {}
    try:
        resp = requests.get(f"{_relay_url(config)}/api/agents/{agent_id}/jobs",
                            headers=_auth_headers(config), params=params)
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")

    body = _report(resp)
    if body is None:
        return
    table = []
    for j in body['jobs']:
        table.append([
            j['job_uuid'],
            (j.get('skill_name') or '')[:24],
            f"{j['price']} USDC",
            _styled_status(j['status']),
            j.get('paid_at') or '-',
        ])
    print(tabulate(table, headers=["Job", "Skill", "Price", "Status", "Paid"], tablefmt="simple"))
    click.echo(f"{body['total']} total")


@cli.command()
@click.argument('job_uuid')
def show(job_uuid):
    """Show one job."""
    config = load_config()
    try:
        resp = requests.get(f"{_relay_url(config)}/api/jobs/{job_uuid}")
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    body = _report(resp)
    if body is None:
        return
    rows = [[k, v] for k, v in body.items() if v is not None and k not in ('input', 'output')]
    print(tabulate(rows, tablefmt="plain"))
    click.echo("Input:  " + json.dumps(body.get('input')))
    if body.get('output') is not None:
        click.echo("Output: " + json.dumps(body['output']))


@cli.command()
@click.argument('job_uuid')
def accept(job_uuid):
    """Accept a paid job."""
    config = load_config()
    try:
        resp = requests.post(f"{_relay_url(config)}/api/jobs/{job_uuid}/accept",
                             headers=_auth_headers(config))
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    _report(resp, f"Job {job_uuid} accepted.")


@cli.command()
@click.argument('job_uuid')
@click.option('--reason', default=None)
def decline(job_uuid, reason):
    """Decline a job. A paid job is refunded."""
    config = load_config()
    try:
        resp = requests.post(f"{_relay_url(config)}/api/jobs/{job_uuid}/decline",
                             headers=_auth_headers(config), json={"reason": reason})
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    _report(resp, f"Job {job_uuid} declined.")


@cli.command()
@click.argument('job_uuid')
@click.argument('file_path')
def deliver(job_uuid, file_path):
    """Deliver a result (file contents) for an accepted job."""
    config = load_config()
    if not os.path.exists(file_path):
        raise click.ClickException("File not found.")
    with open(file_path, 'r') as f:
        content = f.read()

    try:
        click.echo(f"Delivering {file_path} to {job_uuid}...")
        resp = requests.post(f"{_relay_url(config)}/api/jobs/{job_uuid}/deliver",
                             headers=_auth_headers(config),
                             json={"output": {"type": "text", "content": content}})
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    body = _report(resp, "Result delivered.")
    if body:
        click.echo(f"Status: {_styled_status(body['status'])}")


@cli.command()
@click.argument('agent_id', required=False)
def trust(agent_id):
    """Show trust tier, score and progress for an agent (default: yourself)."""
    config = load_config()
    agent_id = agent_id or config.get('agent_id')
    try:
        resp = requests.get(f"{_relay_url(config)}/api/agents/{agent_id}/trust-metrics")
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    body = _report(resp)
    if body is None:
        return

    click.echo(f"Agent: {agent_id}")
    click.echo(f"Tier:  {click.style(body['trust_tier'].upper(), fg='green')}  score {body['trust_score']}")
    if body.get('next_tier'):
        click.echo(f"Next:  {body['next_tier']} ({body['tier_progress']}%, ladder {body['progress']}%)")
        breakdown = body.get('progress_breakdown') or {}
        print(tabulate([[k, f"{v:.0f}%"] for k, v in breakdown.items()],
                       headers=["Requirement", "Met"], tablefmt="simple"))


@cli.command()
@click.argument('job_uuid')
@click.argument('outcome', type=click.Choice(['refund', 'partial', 'release']))
def resolve(job_uuid, outcome):
    """Resolve a disputed job (operator). Needs OPERATOR_PRIVATE_KEY."""
    from eth_account import Account
    from eth_account.messages import encode_defunct

    private_key = os.environ.get('OPERATOR_PRIVATE_KEY')
    if not private_key:
        raise click.ClickException("Set OPERATOR_PRIVATE_KEY to sign operator requests.")

    config = load_config()
    path = f"/api/jobs/{job_uuid}/resolve"
    timestamp = str(int(time.time()))
    signed = Account.sign_message(encode_defunct(text=f"HUB:{path}:{timestamp}"), private_key=private_key)
    signature = signed.signature.hex()
    if not signature.startswith('0x'):
        signature = '0x' + signature

    try:
        resp = requests.post(f"{_relay_url(config)}{path}", json={"outcome": outcome}, headers={
            "X-Operator-Signature": signature,
            "X-Operator-Timestamp": timestamp,
        })
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error connecting to relay: {e}")
    body = _report(resp, f"Dispute resolved as {outcome}.")
    if body:
        click.echo(f"Status: {_styled_status(body['status'])}  refund: {body.get('refund_amount')}")


if __name__ == '__main__':
    cli()
