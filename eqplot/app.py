import flask
from flask import request, jsonify
import argparse
import os
import logging
import threading
from typing import Any, Dict, Optional

from . import config
from .history import HistoryStore, DISPLAY_FORMAT
from .ocr import extract_text
from .plotting import Plotted, attempt_plot, render_png, save_png
from .retention import RetentionPolicy

# --- Logging Setup ---
logging.basicConfig(
    level=logging.DEBUG if config.DEBUG_MODE else logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# --- History Store Setup ---
# One store per process; sqlite handles are not safe for concurrent writers,
# so every access from request threads goes through STORE_LOCK.
STORE_LOCK = threading.Lock()
_store: Optional[HistoryStore] = None


def init_store(database=None) -> HistoryStore:
    """Opens (or reopens) the history store."""
    global _store
    with STORE_LOCK:
        if _store is not None:
            _store.close()
        _store = HistoryStore(database or config.DATABASE)
        if not _store.is_connected():
            logger.warning("History database unavailable; queries will not be saved.")
        return _store


def get_store() -> HistoryStore:
    if _store is None:
        return init_store()
    return _store


def record_history(source_path: str, query_text: str) -> bool:
    store = get_store()
    with STORE_LOCK:
        return store.create(source_path, query_text)


def purge_history(max_age_days: int = config.RETENTION_DAYS):
    store = get_store()
    with STORE_LOCK:
        return RetentionPolicy(store, max_age_days).enforce()


def _plot_payload(outcome: Plotted) -> Dict[str, Any]:
    return {
        "title": outcome.title,
        "expression": outcome.expression,
        "points": outcome.series.to_list(),
    }


# --- Flask App Setup ---

app = flask.Flask(__name__)
app.config["DEBUG"] = config.DEBUG_MODE

# --- API Endpoints ---


@app.route("/plot", methods=["POST"])
def plot():
    """Plots an equation and records the query in history."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or "query" not in data:
        return jsonify({"error": "Missing 'query' in JSON payload"}), 400

    query = str(data["query"]).strip()
    if not query:
        return jsonify({"error": "Query cannot be empty"}), 400
    label = data.get("label") or query

    outcome = attempt_plot(query, label)
    # Saving is independent of whether the plot worked
    saved = record_history(config.TEXT_QUERY_SOURCE, query)

    if isinstance(outcome, Plotted):
        payload = _plot_payload(outcome)
        payload["saved"] = saved
        return jsonify(payload), 200
    return jsonify({"error": outcome.message, "reason": outcome.reason.value, "saved": saved}), 400


@app.route("/plot.png", methods=["POST"])
def plot_png():
    """Renders an equation as a PNG chart. Does not touch history."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not str(data.get("query", "")).strip():
        return jsonify({"error": "Missing 'query' in JSON payload"}), 400

    query = str(data["query"]).strip()
    outcome = attempt_plot(query, data.get("label") or query)
    if not isinstance(outcome, Plotted):
        return jsonify({"error": outcome.message, "reason": outcome.reason.value}), 400
    return flask.Response(render_png(outcome), mimetype="image/png")


@app.route("/ocr", methods=["POST"])
def ocr():
    """Extracts an equation from an image, records it and tries to plot it."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or "image_path" not in data:
        return jsonify({"error": "Missing 'image_path' in JSON payload"}), 400

    image_path = str(data["image_path"])
    text = extract_text(image_path)
    saved = record_history(image_path, text)

    response = {"image_path": image_path, "text": text, "saved": saved}
    outcome = attempt_plot(text, text)
    if isinstance(outcome, Plotted):
        response["plot"] = _plot_payload(outcome)
    else:
        response["error"] = outcome.message
        response["reason"] = outcome.reason.value
    return jsonify(response), 200


@app.route("/history", methods=["GET"])
def list_history():
    store = get_store()
    with STORE_LOCK:
        connected = store.is_connected()
        records = store.list_all()
    return jsonify({"connected": connected, "records": [record.to_dict() for record in records]}), 200


@app.route("/history", methods=["DELETE"])
def delete_old_history():
    """Applies the retention policy; `older_than_days` overrides the default age."""
    raw_days = request.args.get("older_than_days", str(config.RETENTION_DAYS))
    try:
        days = int(raw_days)
        if days < 0:
            raise ValueError(days)
    except ValueError:
        return jsonify({"error": f"Invalid 'older_than_days': '{raw_days}'"}), 400

    report = purge_history(days)
    if not report.store_available:
        return jsonify({"error": "History database not connected", "deleted": 0}), 503
    return jsonify({"deleted": report.deleted, "cutoff_utc": report.cutoff.isoformat(sep=" ", timespec="seconds")}), 200


@app.route("/history/all", methods=["DELETE"])
def delete_all_history():
    store = get_store()
    with STORE_LOCK:
        if not store.is_connected():
            return jsonify({"error": "History database not connected", "deleted": 0}), 503
        deleted = store.delete_all()
    return jsonify({"deleted": deleted}), 200


# --- CLI Interface ---
COMMANDS = ["help", "history", "purge", "clear-history", "ocr", "save", "exit", "quit"]

HELP_TEXT = """Commands:
  <equation>        plot an equation in x, e.g. 'y = x^2 - 3x' or 'sin(x)/x'
  ocr <image path>  read an equation from an image and plot it
  save <file.png>   save the last successful plot as a PNG
  history           list saved queries
  purge [days]      delete history older than [days] (default {days})
  clear-history     delete all history
  exit | quit       leave"""


def _describe(outcome: Plotted) -> str:
    xs, ys = outcome.series.xs, outcome.series.ys
    return (
        f"{outcome.title}: {len(outcome.series)} points, "
        f"x in [{min(xs):g}, {max(xs):g}], y in [{min(ys):g}, {max(ys):g}]"
    )


def _print_history(store: HistoryStore):
    records = store.list_all()
    if not records:
        print("History is empty." if store.is_connected() else "History database not connected.")
        return
    for record in records:
        print(f"  {record.id:>4}  {record.created_local:{DISPLAY_FORMAT}}  {record.source_path}  |  {record.query_text}")


def _setup_readline():
    """Enables line editing, persistent input history and tab completion."""
    try:
        import readline
        import atexit
    except ImportError:
        return False

    histfile = os.path.join(os.path.expanduser("~"), ".eqplot_history")
    try:
        readline.read_history_file(histfile)
        readline.set_history_length(1000)
    except FileNotFoundError:
        pass
    atexit.register(readline.write_history_file, histfile)

    def completer(text, state):
        matches = [cmd for cmd in COMMANDS if cmd.startswith(text)]
        if state < len(matches):
            return matches[state]
        return None

    readline.parse_and_bind("tab: complete")
    readline.set_completer(completer)
    return True


def run_cli_mode(argv=None):
    """Run the plotter in interactive CLI mode."""
    parser = argparse.ArgumentParser(description="Equation plotter CLI")
    parser.add_argument("--database", "-d", type=str, help="History database file")
    parser.add_argument("--no-purge", action="store_true", help="Skip the retention purge on startup")
    parser.add_argument("--retention-days", type=int, default=config.RETENTION_DAYS,
                        help="Age in days after which history is purged")
    args = parser.parse_args(argv)

    store = init_store(args.database)
    if not args.no_purge:
        report = purge_history(args.retention_days)
        if report.deleted:
            print(f"{report.deleted} old history entries deleted.")

    has_readline = _setup_readline()
    print("Equation Plotter - Press Ctrl+C to exit")
    print("Enter an equation like 'y = x^2', 'sin(x)' or '1/x', or 'help' for commands")
    if not has_readline:
        print("Note: Install 'readline' (Unix) or 'pyreadline3' (Windows) for command history and tab completion")

    last_plot = None
    try:
        while True:
            try:
                query = input("plot> ").strip()
                if not query:
                    continue
                command, _, argument = query.partition(" ")
                command = command.lower()
                argument = argument.strip()

                if command in ("exit", "quit", "bye"):
                    break
                if command == "help":
                    print(HELP_TEXT.format(days=args.retention_days))
                    continue
                if command == "history":
                    _print_history(store)
                    continue
                if command == "purge":
                    days = int(argument) if argument else args.retention_days
                    report = purge_history(days)
                    if report.store_available:
                        print(f"{report.deleted} history entries older than {days} days deleted.")
                    else:
                        print("History database not connected. Cannot perform deletion.")
                    continue
                if command == "clear-history":
                    print(f"{store.delete_all()} history entries deleted.")
                    continue
                if command == "save":
                    if last_plot is None:
                        print("Nothing plotted yet.")
                    elif not argument:
                        print("Usage: save <file.png>")
                    else:
                        print(f"Saved to {save_png(last_plot, argument)}")
                    continue

                if command == "ocr":
                    if not argument:
                        print("Usage: ocr <image path>")
                        continue
                    source_path, text = argument, extract_text(argument)
                    print(f"Extracted: {text}")
                else:
                    source_path, text = config.TEXT_QUERY_SOURCE, query

                outcome = attempt_plot(text, text)
                if isinstance(outcome, Plotted):
                    last_plot = outcome
                    print(_describe(outcome))
                else:
                    print(f"Error: {outcome.message}")

                if not store.create(source_path, text):
                    print("Warning: query not saved to history.")

            except (ValueError, OSError) as e:
                print(f"Error processing input: {e}")

    except (KeyboardInterrupt, EOFError):
        print("\nExiting...")

    store.close()
    print("Goodbye!")


# --- Entry Points ---
def start_web_server():
    """Entry point for running the web server."""
    init_store()
    purge_history()
    logger.info(f"Starting web server on http://{config.HOST}:{config.PORT}")
    app.run(host=config.HOST, port=config.PORT)


def start_cli_mode():
    """Entry point for running the CLI mode."""
    run_cli_mode()


def main():
    """Runs the CLI when arguments are given, the web server otherwise."""
    import sys

    if len(sys.argv) > 1:
        run_cli_mode()
        return
    start_web_server()


if __name__ == "__main__":
    main()
