#!/usr/bin/env python3

import datetime
import ipaddress
import json
import os
import sys
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import typer
from rich import box
from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from cloudchamber_api import (
    ApiError,
    AttrDict,
    CloudchamberClient,
    CloudchamberConfig,
    CloudchamberError,
    unwrap_payload,
)

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

BRAND_COLOR = "#F38020"
BAR = "│"
REFRESH_KEYS = {"r", "R"}
PLACEMENTS_HELP_TEXT = "Hint: Type R and press return to refresh! Or press return to go back"
DEPLOYMENTS_HELP_TEXT = "Select a deployment by index. Press return to quit"
JSON_INDENT = 4

# health 값 -> 배지 스타일
_STATUS_STYLES: Dict[str, str] = {
    "running": "bold black on green",
    "placed": "bold black on yellow",
    "scheduled": "bold black on yellow",
    "starting": "bold black on yellow",
    "pending": "bold black on yellow",
    "stopping": "bold black on grey62",
    "stopped": "bold black on grey62",
    "failed": "bold white on red",
    "unhealthy": "bold white on red",
}


class NoDeploymentsFound(CloudchamberError):
    """필터 조건에 맞는 deployment가 하나도 없을 때."""


@dataclass(frozen=True)
class GlobalOptions:
    json_output: bool = False
    debug: bool = False


@dataclass(frozen=True)
class ListFilters:
    """list 명령의 서버측 필터."""

    location: Optional[str] = None
    image: Optional[str] = None
    state: Optional[str] = None
    ipv4: Optional[str] = None

    def as_kwargs(self) -> Dict[str, Optional[str]]:
        return {
            "location": self.location,
            "image": self.image,
            "state": self.state,
            "ipv4": self.ipv4,
        }


@dataclass(frozen=True)
class ChoiceOption:
    """선택 프롬프트 항목: 제목, 상세 라인, 선택 시 반환되는 값."""

    label: str
    value: str
    details: List[str] = field(default_factory=list)


def is_interactive() -> bool:
    """stdin/stdout 모두 TTY이고 CI 환경이 아닐 때만 대화형으로 동작."""
    if os.environ.get("CI"):
        return False
    return sys.stdin.isatty() and sys.stdout.isatty()


def status_to_colored(status: Optional[str]) -> str:
    """placement health 값을 색상 배지 markup으로 변환."""
    if not status:
        return "[bold white on grey23] NONE [/]"
    text = escape(f" {str(status).upper()} ")
    style = _STATUS_STYLES.get(str(status).lower())
    if style is None:
        return text
    return f"[{style}]{text}[/]"


def _event_health(event: AttrDict) -> Optional[str]:
    status_change = event.status_change
    if isinstance(status_change, AttrDict):
        return status_change.get("health")
    return None


def event_message(event: AttrDict, last_event: bool) -> str:
    """
    이벤트 한 줄을 렌더링한다.
    health 실패는 위치와 무관하게 실패 배지를 붙이고, 마지막 이벤트만 강조한다.
    SSHStarted는 항상 초록색, 나머지는 dim 처리.
    """
    message = escape(str(event.message or ""))
    name = event.name
    if _event_health(event) == "failed":
        message = f"[bold white on red] X [/] [dim]{message}[/dim]"
    elif last_event and name == "VMStopped":
        message = f"[yellow]{message}[/yellow]"
    elif (last_event and name == "VMStarted") or name == "SSHStarted":
        message = f"[green]{message}[/green]"
    elif last_event:
        message = f"[{BRAND_COLOR}]{message}[/]"
    else:
        message = f"[dim]{message}[/dim]"
    return f"{message} ({escape(str(event.time))})"


def placement_to_option(placement: AttrDict) -> ChoiceOption:
    placement_id = str(placement.id or "")
    status = placement.status
    health = status.get("health") if isinstance(status, AttrDict) else None
    events = list(placement.events or [])
    details = [
        f"ID: [dim]{escape(placement_id)}[/dim]",
        f"Version: [dim]{escape(str(placement.deployment_version))}[/dim]",
        f"Status: {status_to_colored(health)}",
        "[white on cyan]Events[/]",
    ]
    details.extend(
        " " + event_message(event, idx == len(events) - 1)
        for idx, event in enumerate(events)
    )
    return ChoiceOption(
        label=f"Placement {placement_id[:6]} ({placement.created_at})",
        value=placement_id,
        details=details,
    )


def _location_name(deployment: AttrDict) -> str:
    location = deployment.location
    if isinstance(location, AttrDict):
        return str(location.name or "-")
    return str(location or "-")


def deployment_to_option(deployment: AttrDict) -> ChoiceOption:
    deployment_id = str(deployment.id or "")
    network = deployment.network
    ipv4 = network.get("ipv4") if isinstance(network, AttrDict) else None
    ipv6 = network.get("ipv6") if isinstance(network, AttrDict) else None
    current = deployment.current_placement
    if isinstance(current, AttrDict):
        current_status = current.status
        health = (
            current_status.get("health") if isinstance(current_status, AttrDict) else None
        )
        placement_line = f"Current placement: {status_to_colored(health)}"
    else:
        placement_line = "Current placement: [dim]none[/dim]"
    location = _location_name(deployment)
    details = [
        f"ID: [dim]{escape(deployment_id)}[/dim]",
        f"Type: [dim]{escape(str(deployment.type or '-'))}[/dim]",
        f"Location: [dim]{escape(location)}[/dim]",
        f"Version: [dim]{escape(str(deployment.version))}[/dim]",
        f"Image: [dim]{escape(str(deployment.image or '-'))}[/dim]",
        f"vCPU: [dim]{deployment.vcpu}[/dim], Memory: [dim]{escape(str(deployment.memory))}[/dim]",
        f"IPv4: [dim]{escape(str(ipv4 or '-'))}[/dim], IPv6: [dim]{escape(str(ipv6 or '-'))}[/dim]",
        placement_line,
    ]
    return ChoiceOption(
        label=f"{deployment_id[:6]} {location} {deployment.image or ''}".strip(),
        value=deployment_id,
        details=details,
    )


def render_options(question: str, help_text: str, options: Sequence[ChoiceOption]) -> None:
    console.print(f"\n=== {question} ===", style="bold green")
    if not options:
        console.print("No entries.", style="dim")
    for idx, option in enumerate(options, start=1):
        body = Group(*(Text.from_markup(line) for line in option.details))
        console.print(
            Panel(
                body,
                title=f"[bold green]{idx}[/bold green] {escape(option.label)}",
                title_align="left",
                box=box.ROUNDED,
            )
        )
    console.print(help_text, style="dim")


def choose(
    question: str,
    options: List[ChoiceOption],
    *,
    help_text: str,
    label: str,
    on_refresh: Optional[Callable[[], List[ChoiceOption]]] = None,
) -> Optional[str]:
    """
    번호로 항목을 고르는 프롬프트.
    빈 입력은 None, on_refresh가 있으면 R 입력 시 목록을 교체한다.
    """
    current = list(options)
    while True:
        render_options(question, help_text, current)
        selection = Prompt.ask(question, default="", show_default=False).strip()
        if not selection:
            console.print(label, style="dim")
            return None
        if selection in REFRESH_KEYS and on_refresh is not None:
            refreshed = on_refresh()
            if refreshed:
                current = refreshed
            continue
        if not selection.isdigit():
            console.print("Please enter a number.", style="bold red")
            continue
        index = int(selection)
        if index < 1 or index > len(current):
            console.print("Invalid index.", style="bold red")
            continue
        return current[index - 1].value


def promise_spinner(loader: Callable[[], T], message: str, *, quiet: bool = False) -> T:
    """loader 실행 동안 spinner를 표시한다."""
    if quiet:
        return loader()
    with console.status(message, spinner="dots"):
        return loader()


def build_client(config: CloudchamberConfig) -> CloudchamberClient:
    return CloudchamberClient(config)


def load_account_spinner(client: CloudchamberClient, *, quiet: bool = False) -> AttrDict:
    """토큰/계정 유효성을 확인한다. 실패 시 ApiError가 그대로 전파된다."""
    return promise_spinner(client.get_me, "Loading account", quiet=quiet)


def fetch_deployments(
    client: CloudchamberClient, prefix: str, filters: ListFilters
) -> List[AttrDict]:
    deployments = client.list_deployments(**filters.as_kwargs())
    return [item for item in deployments if str(item.id or "").startswith(prefix)]


def load_deployments(
    client: CloudchamberClient, prefix: str, filters: ListFilters
) -> List[AttrDict]:
    deployments = promise_spinner(
        lambda: fetch_deployments(client, prefix, filters), "Loading deployments"
    )
    if not deployments:
        raise NoDeploymentsFound("No deployments found matching the given filters.")
    return deployments


def list_deployments_and_choose(deployments: List[AttrDict]) -> Optional[AttrDict]:
    options = [deployment_to_option(item) for item in deployments]
    chosen = choose(
        "Deployments",
        options,
        help_text=DEPLOYMENTS_HELP_TEXT,
        label="leaving",
    )
    if chosen is None:
        return None
    for deployment in deployments:
        if str(deployment.id) == chosen:
            return deployment
    return None


def collect_json_output(
    client: CloudchamberClient, prefix: str, filters: ListFilters
) -> Any:
    """
    비대화형 출력 구조.
    정확히 하나만 일치하면 placements를 합친 단일 객체, 아니면 배열.
    """
    deployments = fetch_deployments(client, prefix, filters)
    if len(deployments) == 1:
        deployment = deployments[0]
        placements = client.list_placements(str(deployment.id))
        merged = dict(deployment.to_dict())
        merged["placements"] = unwrap_payload(placements)
        return merged
    return unwrap_payload(deployments)


def _format_refresh_time() -> str:
    return datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class PlacementBrowser:
    """선택된 deployment의 placement 목록 로딩/새로고침 상태."""

    def __init__(
        self,
        client: CloudchamberClient,
        deployment: AttrDict,
        *,
        clock: Callable[[], str] = _format_refresh_time,
    ) -> None:
        self.client = client
        self.deployment = deployment
        self.clock = clock
        self.closed = False

    def load(self) -> List[ChoiceOption]:
        placements = self.client.list_placements(str(self.deployment.id))
        return [placement_to_option(item) for item in placements]

    def refresh(self) -> List[ChoiceOption]:
        with console.status("Refreshing placements", spinner="dots"):
            options = self.load()
        # 프롬프트가 이미 닫힌 뒤의 새로고침 결과는 버린다.
        # choose()는 동기 호출이라 현재 흐름에서는 도달하지 않는다. 비동기 프롬프트용 가드.
        if self.closed:
            return []
        if options:
            first = options[0]
            options[0] = replace(
                first, label=f"{first.label}, last refresh: {self.clock()}"
            )
        return options


def list_command_handle(
    client: CloudchamberClient, prefix: str, filters: ListFilters
) -> None:
    while True:
        console.print(BAR, style="grey50")
        deployments = load_deployments(client, prefix, filters)
        deployment = list_deployments_and_choose(deployments)
        if deployment is None:
            return
        browser = PlacementBrowser(client, deployment)
        options = promise_spinner(browser.load, "Loading placements")
        try:
            choose(
                "Placements",
                options,
                help_text=PLACEMENTS_HELP_TEXT,
                label="going back",
                on_refresh=browser.refresh,
            )
        finally:
            browser.closed = True


def cleanup() -> None:
    err_console.print("Cleaning up...", style="dim")


def _exit_with_cleanup(code: int, message: str, style: str = "bold yellow") -> None:
    """메시지를 출력하고 정리 후 지정된 코드로 종료."""
    err_console.print()
    err_console.print(message, style=style)
    cleanup()
    sys.exit(code)


def report_failure(exc: CloudchamberError, *, json_output: bool) -> None:
    status = exc.status if isinstance(exc, ApiError) else None
    if json_output:
        payload: Dict[str, Any] = {"error": str(exc), "status": status}
        if isinstance(exc, ApiError) and exc.body is not None:
            payload["body"] = exc.body
        typer.echo(json.dumps(payload, indent=JSON_INDENT))
        return
    title = f"Error (HTTP {status})" if status else "Error"
    err_console.print(Panel(escape(str(exc)), title=title, style="bold red"))


def handle_failure(
    func: Callable[..., None], options: GlobalOptions
) -> Callable[..., None]:
    """명령 실행 중 발생한 오류를 공통 형식으로 보고하고 종료 코드를 정한다."""

    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except CloudchamberError as exc:
            report_failure(exc, json_output=options.json_output)
            raise typer.Exit(code=1) from exc
        except KeyboardInterrupt:
            _exit_with_cleanup(130, "Interrupted (Ctrl+C). Exiting.")
        except EOFError:
            _exit_with_cleanup(0, "Input closed (EOF). Exiting.", style="bold green")

    return wrapper


def run_list(options: GlobalOptions, prefix: str, filters: ListFilters) -> None:
    config = CloudchamberConfig.from_env(debug=options.debug)
    non_interactive = options.json_output or not is_interactive()
    with build_client(config) as client:
        load_account_spinner(client, quiet=non_interactive)
        if non_interactive:
            payload = collect_json_output(client, prefix, filters)
            typer.echo(json.dumps(payload, indent=JSON_INDENT))
            return
        list_command_handle(client, prefix, filters)


def _validate_ipv4(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        raise typer.BadParameter(f"'{value}' is not a valid IPv4 address") from None
    return value


app = typer.Typer(
    help="Cloudchamber deployments viewer.",
    add_completion=False,
    no_args_is_help=True,
)


@app.callback()
def cli(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False, "--json", help="Return output as clean JSON"
    ),
    debug: bool = typer.Option(False, "--debug", help="Print API requests to stderr"),
) -> None:
    ctx.obj = GlobalOptions(json_output=json_output, debug=debug)


@app.command("list")
def list_command(
    ctx: typer.Context,
    deployment_id_prefix: Optional[str] = typer.Argument(
        None,
        metavar="[DEPLOYMENTIDPREFIX]",
        help=(
            "Optional deploymentId to filter deployments. "
            "'list' will only showcase deployments that contain this ID prefix"
        ),
    ),
    location: Optional[str] = typer.Option(
        None, "--location", help="Filter deployments by location"
    ),
    image: Optional[str] = typer.Option(
        None, "--image", help="Filter deployments by image"
    ),
    state: Optional[str] = typer.Option(
        None, "--state", help="Filter deployments by deployment state"
    ),
    ipv4: Optional[str] = typer.Option(
        None,
        "--ipv4",
        help="Filter deployments by ipv4 address",
        callback=_validate_ipv4,
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Return output as clean JSON"
    ),
    debug: bool = typer.Option(False, "--debug", help="Print API requests to stderr"),
) -> None:
    """List and view status of deployments"""
    inherited = ctx.obj if isinstance(ctx.obj, GlobalOptions) else GlobalOptions()
    options = GlobalOptions(
        json_output=inherited.json_output or json_output,
        debug=inherited.debug or debug,
    )
    filters = ListFilters(
        location=location,
        image=image,
        state=state.lower() if state else None,
        ipv4=ipv4,
    )
    handle_failure(run_list, options)(options, deployment_id_prefix or "", filters)


def main() -> None:
    app(prog_name="cloudchamber")


if __name__ == "__main__":
    main()
