"""
Terminal rendering of streamed chunks and final responses with rich.
"""
import json
from typing import Dict, Any, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .types import Chunk, Response, SessionResult

default_console = Console()


def _metadata_panel(meta: Dict[str, Any]) -> Panel:
    return Panel(
        Syntax(json.dumps(meta, indent=2, default=str), "json", theme="lightbulb", background_color="default"),
        title="[bold]Metadata[/bold]",
        border_style="dim",
    )


class RichStreamPrinter:
    """
    Chunk callback that renders a streamed answer live as markdown.

    Pass an instance as `on_chunk`. The live panel opens on the first chunk
    and closes on the final (done) chunk; one printer can be reused across
    requests. Only candidate 0 is rendered.

        printer = RichStreamPrinter(title="gpt-4o")
        await session.send_message("Why is the sky blue?", printer)
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.border_style = border_style
        self.console = console or default_console
        self._text = ""
        self._live: Optional[Live] = None

    @property
    def text(self) -> str:
        """Text received since the stream started."""
        return self._text

    def __call__(self, chunk: Chunk) -> None:
        if self._live is None:
            self._text = ""
            self._live = Live(self._panel(False), refresh_per_second=self.refresh_rate, console=self.console)
            self._live.start()

        if chunk.get("index", 0) == 0:
            self._text += chunk.get("text_delta", "")

        if chunk.get("done"):
            self._live.update(self._panel(True))
            self._live.stop()
            self._live = None
        else:
            self._live.update(self._panel(False))

    def _panel(self, is_final: bool) -> Panel:
        if self._text.strip():
            content = Markdown(self._text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme)
        else:
            content = Text("(waiting for response...)", style="dim italic")
        title = "[bold]Final Response[/bold]" if is_final else f"[bold]{self.title}[/bold]"
        return Panel(content, title=title, border_style="green" if is_final else self.border_style, padding=(1, 2))


class RichPrinter:
    """
    Print a finished Response or session result in a panel.
    """

    def __init__(
        self,
        title: str = "Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        border_style: str = "green",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.border_style = border_style
        self.console = console or default_console

    def print_response(self, response: Response) -> Response:
        """
        Display a Response: its text, any function calls and its metadata.

        Returns:
            The same response for chaining.
        """
        title = f"[bold]{self.title}[/bold]"
        if response.get("provider"):
            title += f" [dim]({response['provider']})[/dim]"

        body = [self._markdown(response.get("text", ""))]
        for call in response.get("function_calls") or []:
            body.append(Text(f"→ {call['name']}({json.dumps(call['arguments'])})", style="yellow"))
        meta = response.get("meta")
        if self.show_metadata and meta:
            body.append(_metadata_panel(meta))

        self.console.print(Panel(Group(*body), title=title, border_style=self.border_style, padding=(1, 2)))
        return response

    def print_result(self, result: SessionResult) -> SessionResult:
        """Display the result of ChatSession.send_message."""
        body = [self._markdown(result["text"])]
        called = [name for round_names in result["called_functions"] for name in round_names]
        if called:
            body.append(Text(f"Called: {', '.join(called)}", style="dim"))
        self.console.print(
            Panel(Group(*body), title=f"[bold]{self.title}[/bold]", border_style=self.border_style, padding=(1, 2))
        )
        return result

    def _markdown(self, text: str):
        if not text.strip():
            return Text("(empty response)", style="dim italic")
        return Markdown(text, code_theme=self.code_theme, inline_code_theme=self.inline_code_theme)
