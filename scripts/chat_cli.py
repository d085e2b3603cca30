#!/usr/bin/env python3
"""Interactive chat CLI for the conversation runtime's HTTP API."""

import sys

import httpx
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table


class ChatCLI:
    """Interactive chat interface over the conversation API."""

    def __init__(self, base_url: str = "http://localhost:8000"):
        self.base_url = base_url
        self.conversation_id: str | None = None
        self.model_id: str | None = None
        self.console = Console()
        self.client = httpx.Client(base_url=base_url, timeout=180.0)

    def start(self) -> None:
        """Start the interactive chat session."""
        self.console.print(
            Panel.fit(
                "[bold blue]chatcore - Interactive Chat[/bold blue]\n"
                "Type your messages to chat with the assistant.\n"
                "Commands: /help, /new, /list, /open, /models, /model, /export, /quit",
                border_style="blue",
            )
        )

        if not self._test_connection():
            self.console.print(f"[red]Cannot connect to the service at {self.base_url}.[/red]")
            return

        self.console.print("[green]Connected[/green]\n")

        try:
            while True:
                user_input = Prompt.ask("\n[bold cyan]You[/bold cyan]").strip()
                command, _, argument = user_input.partition(" ")

                match command.lower():
                    case "/quit" | "/exit":
                        break
                    case "/help":
                        self._show_help()
                    case "/new":
                        self.conversation_id = None
                        self.console.print("[yellow]Next message starts a new conversation[/yellow]")
                    case "/list":
                        self._list_conversations()
                    case "/open":
                        self._open_conversation(argument.strip())
                    case "/models":
                        self._list_models()
                    case "/model":
                        self.model_id = argument.strip() or None
                        model = self.model_id or "the default"
                        self.console.print(f"[yellow]New conversations will use {model}[/yellow]")
                    case "/export":
                        self._export(argument.strip() or "markdown")
                    case "":
                        continue
                    case _:
                        response = self._send_message(user_input)
                        if response:
                            self._display_response(response)

        except KeyboardInterrupt:
            pass
        finally:
            self.console.print("\n[yellow]Goodbye![/yellow]")
            self.client.close()

    def _test_connection(self) -> bool:
        try:
            return self.client.get("/health").status_code == 200
        except httpx.HTTPError:
            return False

    def _ensure_conversation(self) -> str | None:
        if self.conversation_id:
            return self.conversation_id
        response = self.client.post("/conversations", json={"model_id": self.model_id})
        if response.status_code != 201:
            self._show_error(response)
            return None
        self.conversation_id = response.json()["id"]
        return self.conversation_id

    def _send_message(self, message: str) -> dict | None:
        """Send a message and wait for the reply."""
        try:
            conversation_id = self._ensure_conversation()
            if conversation_id is None:
                return None

            with self.console.status("[dim]Thinking...[/dim]"):
                response = self.client.post(f"/conversations/{conversation_id}/messages", json={"content": message})

            if response.status_code == 200:
                return response.json()
            self._show_error(response)
            return None

        except httpx.HTTPError as e:
            self.console.print(f"[red]Connection error: {e}[/red]")
            return None

    def _display_response(self, response: dict) -> None:
        message = response["message"]
        for call in message.get("tool_calls", []):
            style = "green" if call["status"] == "completed" else "red"
            self.console.print(f"[dim]tool[/dim] [{style}]{call['tool_name']}[/{style}] -> {call.get('result') or ''}")

        if message.get("error"):
            self.console.print(
                Panel(message["error"]["message"], title="[bold red]Error[/bold red]", border_style="red")
            )
            if not message["content"]:
                return

        self.console.print(
            Panel(
                Markdown(message["content"] or "_(empty reply)_"),
                title="[bold green]Assistant[/bold green]",
                subtitle=f"[dim]{response['status']}[/dim]",
                border_style="green",
                padding=(1, 2),
            )
        )

    def _list_conversations(self) -> None:
        response = self.client.get("/conversations")
        if response.status_code != 200:
            self._show_error(response)
            return

        table = Table(title="Conversations")
        table.add_column("ID", style="dim")
        table.add_column("Title")
        table.add_column("Messages", justify="right")
        table.add_column("Model")
        for conversation in response.json():
            marker = "* " if conversation["pinned"] else ""
            table.add_row(
                conversation["id"],
                marker + conversation["title"],
                str(conversation["message_count"]),
                conversation["model"]["model_id"],
            )
        self.console.print(table)

    def _open_conversation(self, conversation_id: str) -> None:
        if not conversation_id:
            self.console.print("[red]Usage: /open <conversation id>[/red]")
            return
        response = self.client.get(f"/conversations/{conversation_id}/messages")
        if response.status_code != 200:
            self._show_error(response)
            return

        self.conversation_id = conversation_id
        for message in response.json():
            color = "cyan" if message["role"] == "user" else "green"
            self.console.print(f"[bold {color}]{message['role']}[/bold {color}]: {message['content']}")

    def _list_models(self) -> None:
        response = self.client.get("/models")
        if response.status_code != 200:
            self._show_error(response)
            return
        table = Table(title="Models")
        table.add_column("ID")
        table.add_column("Provider")
        table.add_column("Context", justify="right")
        for model in response.json():
            table.add_row(model["model_id"], model["provider"], str(model["capabilities"]["max_tokens"]))
        self.console.print(table)

    def _export(self, fmt: str) -> None:
        if not self.conversation_id:
            self.console.print("[red]No active conversation[/red]")
            return
        response = self.client.get(f"/conversations/{self.conversation_id}/export", params={"format": fmt})
        if response.status_code != 200:
            self._show_error(response)
            return
        self.console.print(Panel(response.text, title=f"[cyan]Export ({fmt})[/cyan]", border_style="cyan"))

    def _show_error(self, response: httpx.Response) -> None:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        if isinstance(detail, dict):
            detail = detail.get("message", detail)
        self.console.print(f"[red]API Error: {response.status_code} - {detail}[/red]")

    def _show_help(self) -> None:
        help_text = """
[bold]Available Commands:[/bold]
• /help - Show this help message
• /new - Start a new conversation with the next message
• /list - List conversations
• /open <id> - Continue an existing conversation
• /models - List available models
• /model <id> - Use a model for new conversations
• /export [json|markdown|text] - Export the current conversation
• /quit or /exit - Exit the chat

[bold]Tips:[/bold]
• The assistant can use tools: try "What is 12 * (3 + 4)?" or "What's the weather in Paris?"
        """

        self.console.print(Panel(help_text.strip(), title="[cyan]Help[/cyan]", border_style="cyan"))


def main():
    """Main entry point for the chat CLI."""
    base_url = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8000"

    chat = ChatCLI(base_url)
    chat.start()


if __name__ == "__main__":
    main()
