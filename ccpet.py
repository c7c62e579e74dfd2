import json
import math
import os
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console, Group
from rich.panel import Panel
from rich.progress import Progress, BarColumn, TextColumn
from rich.text import Text
from rich.align import Align

__version__ = "0.1.0"

# --- Constants ---
SAVE_FILE_DIR = Path.home() / ".claude-pet"
SAVE_FILE = SAVE_FILE_DIR / "pet-state.json"
SESSION_TRACKER_FILE = SAVE_FILE_DIR / "session-tracker.json"

# Energy & Feeding
INITIAL_ENERGY = 100
MIN_ENERGY = 0
MAX_ENERGY = 100
ENERGY_PER_TOKEN = 0.1
ENERGY_DECAY_PER_MINUTE = MAX_ENERGY / (3 * 24 * 60) # full bar drains over three idle days

# Display
ENERGY_BAR_LENGTH = 10
FILLED_BAR_CHAR = "█"
EMPTY_BAR_CHAR = "░"
ERROR_DISPLAY = "(?) ERROR"

# Expression bands, highest first: (minimum energy, glyph)
EXPRESSIONS = {
    "happy": "(^_^)",
    "hungry": "(o_o)",
    "sick": "(u_u)",
    "dead": "(x_x)",
}
EXPRESSION_BANDS = (
    (90, EXPRESSIONS["happy"]),
    (40, EXPRESSIONS["hungry"]),
    (10, EXPRESSIONS["sick"]),
    (MIN_ENERGY, EXPRESSIONS["dead"]),
)

# Watch mode
WATCH_INTERVAL_DEFAULT = 60
WATCH_INTERVAL_MIN = 10
WATCH_INTERVAL_MAX = 300

# --- Global Objects ---
# stdout carries the status line itself, so diagnostics go to stderr
console = Console()
err_console = Console(stderr=True)


class TokenMetricsError(Exception):
    """Raised when a transcript cannot be read for token metrics."""


# --- Helper Functions ---
def utcnow():
    return datetime.now(timezone.utc)


def round_half_up(value):
    return int(math.floor(value + 0.5))


def clamp_energy(energy):
    return max(MIN_ENERGY, min(MAX_ENERGY, energy))


def get_expression(energy):
    """Map an energy value onto its mood glyph."""
    for threshold, glyph in EXPRESSION_BANDS:
        if energy >= threshold: return glyph
    return EXPRESSION_BANDS[-1][1]


def format_timestamp(moment):
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value):
    if not isinstance(value, str): raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if moment.tzinfo is None: moment = moment.replace(tzinfo=timezone.utc)
    return moment


def generate_energy_bar(energy):
    filled = round_half_up(clamp_energy(energy) * ENERGY_BAR_LENGTH / MAX_ENERGY)
    return FILLED_BAR_CHAR * filled + EMPTY_BAR_CHAR * (ENERGY_BAR_LENGTH - filled)


def render_status(energy, expression):
    """Render `<glyph> <bar>`; a pure projection of energy and expression."""
    return f"{expression} {generate_energy_bar(energy)}"


def format_token_count(tokens):
    if tokens >= 1_000_000: return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1000: return f"{tokens / 1000:.1f}K"
    return str(int(tokens))


def format_elapsed(seconds):
    minutes = max(0, int(seconds // 60)); hours = minutes // 60
    if hours > 0: return f"{hours}h {minutes % 60}m ago"
    return f"{minutes}m ago"


def format_session_metrics(metrics):
    """Session token totals and current context length as one styled line."""
    input_tokens = metrics.get("session_total_input_tokens", 0); output_tokens = metrics.get("session_total_output_tokens", 0); cached_tokens = metrics.get("session_total_cached_tokens", 0)
    return Text.assemble(
        ("Session ", "dim"),
        ("In: ", "dim"), (format_token_count(input_tokens), "green"),
        ("  Out: ", "dim"), (format_token_count(output_tokens), "yellow"),
        ("  Cached: ", "dim"), (format_token_count(cached_tokens), "dark_orange"),
        ("  Total: ", "dim"), (format_token_count(input_tokens + output_tokens + cached_tokens), "white"),
        ("  Ctx: ", "dim"), (format_token_count(metrics.get("context_length", 0)), "cyan"),
    )


def create_progress_bar( label, completed, total, low_color, mid_color, high_color, low_threshold, high_threshold, ):
    progress = Progress( TextColumn(f"{label}:{' '*(10-len(label))}"), BarColumn(bar_width=20), TextColumn("{task.percentage:>3.0f}%"), ); style = mid_color
    if completed <= low_threshold: style = low_color
    elif completed >= high_threshold: style = high_color
    task_id = progress.add_task(label.lower(), total=total, completed=completed); progress.update(task_id, style=style); return progress


# --- Pet Class ---
class Pet:
    def __init__(self, energy=INITIAL_ENERGY, last_feed_time=None, total_tokens_consumed=0):
        self.energy = clamp_energy(energy)
        self.expression = get_expression(self.energy)
        self.last_feed_time = last_feed_time if last_feed_time is not None else utcnow()
        self.total_tokens_consumed = total_tokens_consumed

    def _touch(self, now):
        # lastFeedTime only moves forward
        if now > self.last_feed_time: self.last_feed_time = now

    def apply_time_decay(self, now):
        """Drain energy for the minutes elapsed since the last update."""
        elapsed_minutes = (now - self.last_feed_time).total_seconds() / 60
        if elapsed_minutes > 0:
            self.energy = clamp_energy(self.energy - elapsed_minutes * ENERGY_DECAY_PER_MINUTE)
            self._touch(now)
        self.expression = get_expression(self.energy)

    def feed(self, tokens, now):
        """Decay to `now`, then credit `tokens` worth of energy. Returns the gain applied."""
        tokens = max(0, int(tokens))
        self.apply_time_decay(now)
        energy_before = self.energy
        self.energy = clamp_energy(self.energy + round_half_up(tokens * ENERGY_PER_TOKEN))
        self.total_tokens_consumed += tokens
        self.expression = get_expression(self.energy)
        self._touch(now)
        return self.energy - energy_before

    def get_status_display(self):
        return render_status(self.energy, self.expression)

    def display_status(self, now=None, metrics=None):
        now = now or utcnow()
        art = Align.center(Text(self.expression, style="bold yellow"))
        energy_bar = create_progress_bar("Energy", self.energy, MAX_ENERGY, "red", "yellow", "green", EXPRESSION_BANDS[2][0], EXPRESSION_BANDS[0][0])
        details = Text.assemble(
            ("Energy: ", "dim"), (f"{self.energy:.2f}", "cyan"),
            ("  Lifetime tokens: ", "dim"), (format_token_count(self.total_tokens_consumed), "magenta"),
        )
        last_feed = Text.assemble(("Last fed: ", "dim"), format_elapsed((now - self.last_feed_time).total_seconds()))
        rows = [art, energy_bar, details, last_feed]
        if metrics: rows.append(format_session_metrics(metrics))
        border_style = "red" if self.energy < EXPRESSION_BANDS[2][0] else "blue"
        console.print(Panel( Group(*rows), title="ccpet", subtitle=self.get_status_display(), border_style=border_style, subtitle_align="right" ))

    def to_dict(self):
        return { "energy": self.energy, "expression": self.expression, "lastFeedTime": format_timestamp(self.last_feed_time), "totalTokensConsumed": self.total_tokens_consumed }

    @classmethod
    def from_dict(cls, data, now=None):
        energy = data.get("energy", INITIAL_ENERGY); total = data.get("totalTokensConsumed", 0)
        if isinstance(energy, bool) or not isinstance(energy, (int, float)) or math.isnan(energy): raise ValueError(f"invalid energy: {energy!r}")
        if isinstance(total, bool) or not isinstance(total, int) or total < 0: raise ValueError(f"invalid totalTokensConsumed: {total!r}")
        last_feed_time = parse_timestamp(data["lastFeedTime"]) if "lastFeedTime" in data else (now or utcnow())
        return cls(energy, last_feed_time, total)


# --- Save/Load Functions ---
def load_pet(save_file=None, now=None):
    """Load the saved pet, falling back to a fresh one. Never raises."""
    save_file = Path(save_file or SAVE_FILE)
    try:
        if not save_file.exists(): return Pet(last_feed_time=now)
        with open(save_file, "r", encoding="utf-8") as f: data = json.load(f)
        if not isinstance(data, dict): raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return Pet.from_dict(data, now)
    except OSError as e:
        err_console.print(f"[bold red]Error reading state:[/bold red] {e}")
        return Pet(last_feed_time=now)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        err_console.print(f"[bold red]Error loading state:[/bold red] {e}. Save data might be incompatible or corrupt."); backup_path = save_file.with_suffix(".corrupt.json")
        try: save_file.replace(backup_path); err_console.print(f"[yellow]Backed up corrupt save to {backup_path}[/yellow]")
        except OSError: err_console.print("[yellow]Could not back up corrupt save file.[/yellow]")
        return Pet(last_feed_time=now)


def save_pet(pet, save_file=None):
    """Write the pet as pretty-printed JSON. Failures are reported, never raised."""
    save_file = Path(save_file or SAVE_FILE)
    try:
        save_file.parent.mkdir(parents=True, exist_ok=True)
        with open(save_file, "w", encoding="utf-8") as f:
            json.dump(pet.to_dict(), f, indent=2, ensure_ascii=False)
        return True
    except OSError as e:
        err_console.print(f"[bold red]Error saving state:[/bold red] {e}")
        return False


# --- Transcript Token Metrics ---
def _empty_metrics():
    return { "input_tokens": 0, "output_tokens": 0, "cached_tokens": 0, "total_tokens": 0, "session_total_input_tokens": 0, "session_total_output_tokens": 0, "session_total_cached_tokens": 0, "context_length": 0 }


def _message_usage(message):
    usage = message.get("usage")
    if not isinstance(usage, dict):
        inner = message.get("message")
        usage = inner.get("usage") if isinstance(inner, dict) else None
    return usage if isinstance(usage, dict) else None


def _usage_counts(usage):
    def count(key):
        value = usage.get(key) or 0
        return value if isinstance(value, (int, float)) and not isinstance(value, bool) else 0
    cached = count("cache_creation_input_tokens") + count("cache_read_input_tokens")
    return count("input_tokens"), count("output_tokens"), cached


def load_session_tracker(session_id, tracker_file=None):
    tracker_file = Path(tracker_file or SESSION_TRACKER_FILE)
    try:
        with open(tracker_file, "r", encoding="utf-8") as f: trackers = json.load(f)
        entry = trackers.get(session_id) if isinstance(trackers, dict) else None
        return entry if isinstance(entry, dict) else None
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError) as e:
        err_console.print(f"[yellow]Ignoring unreadable session tracker:[/yellow] {e}")
        return None


def save_session_tracker(session_id, tracker, tracker_file=None):
    tracker_file = Path(tracker_file or SESSION_TRACKER_FILE)
    try:
        tracker_file.parent.mkdir(parents=True, exist_ok=True)
        trackers = {}
        if tracker_file.exists():
            try:
                with open(tracker_file, "r", encoding="utf-8") as f: trackers = json.load(f)
            except json.JSONDecodeError: trackers = {}
        if not isinstance(trackers, dict): trackers = {}
        trackers[session_id] = tracker
        with open(tracker_file, "w", encoding="utf-8") as f:
            json.dump(trackers, f, indent=2)
    except OSError as e:
        err_console.print(f"[bold red]Error saving session tracker:[/bold red] {e}")


def get_token_metrics(transcript_path, tracker_file=None, commit=True):
    """Count the tokens in a JSONL transcript that have not been credited yet.

    Messages up to the session's last processed uuid (from the tracker file)
    are skipped, so feeding the same transcript twice credits nothing the
    second time. Session totals and context length always cover the whole
    file. With `commit=False` the tracker update is left under
    `metrics["tracker"]` for commit_token_metrics to write later. Raises
    TokenMetricsError when the transcript cannot be read.
    """
    if not transcript_path: raise TokenMetricsError("no transcript path given")
    path = Path(transcript_path)
    if not path.is_file(): raise TokenMetricsError(f"transcript not found: {path}")

    messages = []; session_id = ""
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                if not line.strip(): continue
                try: message = json.loads(line)
                except json.JSONDecodeError: continue
                if not isinstance(message, dict): continue
                if message.get("sessionId"): session_id = message["sessionId"]
                messages.append(message)
    except OSError as e:
        raise TokenMetricsError(f"could not read transcript {path}: {e}") from e

    metrics = _empty_metrics()
    if not session_id: return metrics

    latest_main = None; latest_time = None
    for message in messages:
        usage = _message_usage(message)
        if usage is None: continue
        input_tokens, output_tokens, cached_tokens = _usage_counts(usage)
        metrics["session_total_input_tokens"] += input_tokens
        metrics["session_total_output_tokens"] += output_tokens
        metrics["session_total_cached_tokens"] += cached_tokens
        if message.get("isSidechain") is True: continue
        try: stamp = parse_timestamp(message["timestamp"]) if message.get("timestamp") else None
        except (TypeError, ValueError): stamp = None
        # untimed entries fall back to file order
        if stamp is None or latest_time is None or stamp > latest_time:
            latest_main = usage; latest_time = stamp or latest_time
    if latest_main is not None:
        input_tokens, _, cached_tokens = _usage_counts(latest_main)
        metrics["context_length"] = input_tokens + cached_tokens

    tracker = load_session_tracker(session_id, tracker_file)
    processing = tracker is None; last_uuid = ""; last_timestamp = ""
    for message in messages:
        if not processing:
            if message.get("uuid") == tracker.get("lastProcessedUuid"): processing = True
            continue
        usage = _message_usage(message)
        if usage is not None:
            input_tokens, output_tokens, cached_tokens = _usage_counts(usage)
            metrics["input_tokens"] += input_tokens; metrics["output_tokens"] += output_tokens; metrics["cached_tokens"] += cached_tokens
        if message.get("uuid"): last_uuid = message["uuid"]
        if message.get("timestamp"): last_timestamp = message["timestamp"]
    metrics["total_tokens"] = metrics["input_tokens"] + metrics["output_tokens"] + metrics["cached_tokens"]

    if last_uuid:
        previous_total = (tracker or {}).get("totalProcessedTokens") or 0
        if isinstance(previous_total, bool) or not isinstance(previous_total, (int, float)): previous_total = 0
        metrics["tracker"] = { "sessionId": session_id, "lastProcessedUuid": last_uuid, "lastProcessedTimestamp": last_timestamp, "totalProcessedTokens": previous_total + metrics["total_tokens"] }
        if commit: commit_token_metrics(metrics, tracker_file)
    return metrics


def commit_token_metrics(metrics, tracker_file=None):
    """Mark the messages behind `metrics` as credited so they are not counted again."""
    tracker = metrics.get("tracker") if isinstance(metrics, dict) else None
    if tracker: save_session_tracker(tracker["sessionId"], tracker, tracker_file)


# --- Status Line ---
class PetStatusLine:
    """Owns one pet: loads it, feeds it from transcripts, saves it and renders it."""

    def __init__(self, save_file=None, tracker_file=None, clock=None, fetch_metrics=None):
        self.save_file = save_file
        self.tracker_file = tracker_file
        self.clock = clock or utcnow
        self.fetch_metrics = fetch_metrics or (lambda transcript_path: get_token_metrics(transcript_path, self.tracker_file, commit=False))
        self.pet = load_pet(save_file, self.clock())
        self.last_metrics = None

    def get_status_display(self):
        return self.pet.get_status_display()

    def apply_time_decay(self):
        self.pet.apply_time_decay(self.clock())

    def process_tokens_and_get_status_display(self, claude_code_input):
        transcript_path = claude_code_input.get("transcript_path") if isinstance(claude_code_input, dict) else None
        try:
            metrics = self.fetch_metrics(transcript_path)
            tokens = max(0, int(metrics["total_tokens"]))
        except Exception as e:
            # unreadable transcripts must never touch the pet
            err_console.print(f"[yellow]Token processing failed:[/yellow] {e}")
            return self.get_status_display()
        self.pet.feed(tokens, self.clock())
        self.last_metrics = metrics
        # tokens only count as credited once the fed pet is on disk
        if self.save_state(): commit_token_metrics(metrics, self.tracker_file)
        return self.get_status_display()

    def save_state(self):
        return save_pet(self.pet, self.save_file)


# --- Commands ---
def run_status_line(stdin=None, stdout=None):
    stdin = stdin or sys.stdin; stdout = stdout or sys.stdout
    raw_input = stdin.read().strip()
    status_line = PetStatusLine()
    claude_code_input = None
    if raw_input:
        try: claude_code_input = json.loads(raw_input)
        except json.JSONDecodeError as e: err_console.print(f"[yellow]Ignoring invalid status input:[/yellow] {e}")
    if isinstance(claude_code_input, dict):
        display = status_line.process_tokens_and_get_status_display(claude_code_input)
    else:
        status_line.apply_time_decay(); status_line.save_state(); display = status_line.get_status_display()
    stdout.write(display); stdout.flush()


def parse_check_args(args):
    watch = False; interval = WATCH_INTERVAL_DEFAULT; transcript_path = None; i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--watch", "-w"): watch = True
        elif arg == "--interval":
            value = args[i + 1] if i + 1 < len(args) else ""; i += 1
            try: interval = int(value)
            except ValueError: interval = -1
            if not WATCH_INTERVAL_MIN <= interval <= WATCH_INTERVAL_MAX:
                err_console.print(f"[yellow]Interval must be between {WATCH_INTERVAL_MIN} and {WATCH_INTERVAL_MAX} seconds, using {WATCH_INTERVAL_DEFAULT}.[/yellow]"); interval = WATCH_INTERVAL_DEFAULT
        elif arg == "--transcript":
            if i + 1 >= len(args): raise ValueError("--transcript needs a path")
            transcript_path = args[i + 1]; i += 1
        else: raise ValueError(f"Unknown option: {arg}")
        i += 1
    return watch, interval, transcript_path


def check_pet(transcript_path=None):
    status_line = PetStatusLine()
    if transcript_path: status_line.process_tokens_and_get_status_display({"transcript_path": transcript_path})
    else: status_line.apply_time_decay(); status_line.save_state()
    status_line.pet.display_status(status_line.clock(), status_line.last_metrics)
    return status_line


def run_check(args):
    watch, interval, transcript_path = parse_check_args(args)
    if not watch:
        console.print("[cyan]Checking on your pet...[/cyan]"); check_pet(transcript_path)
        console.print("[dim]Checking does not consume any Claude Code tokens. Keep coding to feed your pet.[/dim]")
        return
    try:
        while True:
            os.system('cls' if os.name == 'nt' else 'clear')
            check_pet(transcript_path)
            console.print(f"[dim]Refreshing every {interval}s. Press Ctrl+C to stop.[/dim]")
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Stopped watching.[/bold yellow]")


def reset_pet(state_dir=None):
    state_dir = Path(state_dir) if state_dir else SAVE_FILE_DIR
    removed = 0
    for name in (SAVE_FILE.name, SESSION_TRACKER_FILE.name):
        path = state_dir / name
        if path.exists():
            path.unlink(); removed += 1
            console.print(f"[dim]Removed {name}[/dim]")
    if removed == 0: console.print("[yellow]No pet state files found to reset.[/yellow]")
    else: console.print(f"[bold green]Pet reset complete! Removed {removed} state file(s).[/bold green] Your pet will be reborn on next use.")
    return removed


def show_help():
    console.print("[bold]ccpet[/bold] - Claude Code pet status line\n")
    console.print("Usage: ccpet \\[command] \\[options]\n")
    console.print("Commands:")
    console.print("  [cyan]check[/]        Check on your pet without consuming tokens ([cyan]--watch[/], [cyan]--interval N[/], [cyan]--transcript PATH[/])")
    console.print("  [cyan]reset[/]        Reset your pet to its initial state\n")
    console.print("Options:")
    console.print("  [cyan]-h, --help[/]      Show help information")
    console.print("  [cyan]-v, --version[/]   Show version number\n")
    console.print("Run without arguments to print the status line from Claude Code's JSON on stdin.")


def main(argv=None):
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        try: run_status_line(); return 0
        except Exception as e:
            sys.stdout.write(ERROR_DISPLAY); err_console.print(f"[bold red]Pet status error:[/bold red] {e}"); return 1

    command = args[0]
    if command in ("-h", "--help"): show_help(); return 0
    if command in ("-v", "--version"): console.print(f"ccpet v{__version__}"); return 0
    try:
        if command == "check": run_check(args[1:])
        elif command == "reset": reset_pet()
        else:
            err_console.print(f"[bold red]Unknown command: {command}[/bold red]"); err_console.print('Run "ccpet --help" for usage information.'); return 1
    except (OSError, ValueError) as e:
        err_console.print(f"[bold red]Error executing command:[/bold red] {e}"); return 1
    return 0


# --- Main Execution Block ---
if __name__ == "__main__":
    sys.exit(main())
