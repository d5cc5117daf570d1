from rich import box
from rich.panel import Panel
from rich.table import Table

from .Core.stats import ProxyStats
from .ReverseProxyServer import ReverseProxyServer


def format_bytes(num: float) -> str:
    for unit in ["bytes", "KB", "MB", "GB", "TB"]:
        if num < 1024.0:
            return f"{num:.2f} {unit}"
        num /= 1024.0
    return f"{num:.2f} PB"


def _ms(value) -> str:
    return "N/A" if value is None else f"{value:.2f} ms"


def build_dashboard(server: ReverseProxyServer) -> Table:
    stats: ProxyStats = server.stats
    snap = stats.snapshot()
    address = server.server_address or server.listen_address

    status_panel = Panel(
        f"[bold green]🟢 Running[/bold green]\n"
        f"[bold]Listening:[/bold] {address[0]}:{address[1]}\n"
        f"[bold]Uptime:[/bold] {snap['uptime']} sec\n"
        f"[bold]Active Connections:[/bold] {snap['active_connections']}\n"
        f"[bold]Total Exchanges:[/bold] {snap['total_exchanges']}",
        title="🌐 [bold cyan]Status[/bold cyan]",
        border_style="green",
        padding=(1, 2),
    )

    times = snap["response_times"]
    response_panel = Panel(
        f"[bold]📈 Avg Response:[/bold] {_ms(times['avg_ms'])}\n"
        f"[bold]📉 Min Response:[/bold] {_ms(times['min_ms'])}\n"
        f"[bold]📈 Max Response:[/bold] {_ms(times['max_ms'])}",
        title="⏱️ [bold magenta]Response Times[/bold magenta]",
        border_style="magenta",
        padding=(1, 2),
    )

    rules = "\n".join(rule.describe() for rule in server.rule_set) or "(no rules)"
    if server.default_upstream:
        rules += f"\n* -> {server.default_upstream}"
    rules_panel = Panel(rules, title="🧭 [bold yellow]Rules[/bold yellow]", border_style="yellow", padding=(1, 2))

    outcomes = ", ".join(f"{k}: {v}" for k, v in sorted(snap["outcomes"].items())) or "none yet"
    traffic_panel = Panel(
        f"[bold]↑ Sent:[/bold] {format_bytes(snap['traffic_sent'])}\n"
        f"[bold]↓ Received:[/bold] {format_bytes(snap['traffic_received'])}\n"
        f"[bold]Outcomes:[/bold] {outcomes}",
        title="📊 [bold blue]Traffic[/bold blue]",
        border_style="blue",
        padding=(1, 2),
    )

    log_table = Table(title="🧾 [bold red]Recent Exchanges[/bold red]", expand=True, box=box.SIMPLE)
    log_table.add_column("Status", style="bold cyan", justify="center")
    log_table.add_column("Request", style="dim white", justify="left")
    log_table.add_column("Upstream", justify="left")
    log_table.add_column("Time", justify="right")
    for event in snap["recent"]:
        status = str(event.get("status") or "-")
        colour = "green" if event.get("outcome") in ("ok", "upgraded") else "red"
        log_table.add_row(
            f"[{colour}]{status}[/]",
            f"{event['method']} {event['path']}",
            event["upstream"],
            _ms(event.get("duration_ms")),
        )

    grid = Table.grid(expand=True)
    grid.add_row(status_panel, traffic_panel)
    grid.add_row(rules_panel, response_panel)
    grid.add_row(log_table)
    return grid
