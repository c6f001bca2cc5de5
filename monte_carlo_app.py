import logging
import tkinter as tk
from tkinter import ttk, messagebox

from core import (
    ASSET_CLASS_STATS,
    DEFAULT_INPUTS,
    FULL_ITERATIONS,
    RISK_PROFILES,
    SimulationConfig,
    blended_return_stats,
    config_from_dict,
    load_config,
    parse_dollars,
    parse_percent,
    parse_rate,
    rate_interpretation,
    save_config,
)
from worker import Complete, Failed, Progress, RunState, SimulationRunner


POLL_INTERVAL_MS = 100


class ToolTip:
    """Simple hover tooltip for a widget."""

    def __init__(self, widget, text: str):
        self.widget = widget
        self.text = text
        self.tipwindow = None
        widget.bind("<Enter>", self._show)
        widget.bind("<Leave>", self._hide)

    def _show(self, _event=None):
        if self.tipwindow or not self.text:
            return
        x = self.widget.winfo_rootx() + 20
        y = self.widget.winfo_rooty() + self.widget.winfo_height() + 10
        self.tipwindow = tw = tk.Toplevel(self.widget)
        tw.wm_overrideredirect(True)
        tw.wm_geometry(f"+{x}+{y}")
        tk.Label(
            tw,
            text=self.text,
            justify=tk.LEFT,
            background="#ffffe0",
            relief=tk.SOLID,
            borderwidth=1,
            font=("tahoma", "8", "normal"),
        ).pack(ipadx=1)

    def _hide(self, _event=None):
        tw = self.tipwindow
        self.tipwindow = None
        if tw is not None:
            tw.destroy()


def plot_results(results):
    """Fan chart of the percentile bands and a histogram of final balances."""
    import matplotlib
    matplotlib.use("TkAgg")
    import matplotlib.pyplot as plt
    import matplotlib.ticker as mtick

    bands = results.percentile_bands
    years = list(range(len(bands.p50)))
    dollars = mtick.StrMethodFormatter("${x:,.0f}")

    show_hist = results.all_final_balances is not None
    fig, axes = plt.subplots(1, 2 if show_hist else 1, figsize=(11 if show_hist else 7, 4))
    ax = axes[0] if show_hist else axes

    ax.fill_between(years, bands.p5, bands.p95, color="tab:blue", alpha=0.15, label="5th-95th")
    ax.fill_between(years, bands.p25, bands.p75, color="tab:blue", alpha=0.35, label="25th-75th")
    ax.plot(years, bands.p50, color="navy", linewidth=1.5, label="Median")
    ax.set_xlabel("Years in retirement")
    ax.set_ylabel("Portfolio balance")
    ax.set_title(f"Portfolio outcomes ({results.iterations:,} simulations)")
    ax.yaxis.set_major_formatter(dollars)
    ax.set_xlim(0, max(years[-1], 1))
    ax.legend(loc="upper left")

    if show_hist:
        hist_ax = axes[1]
        hist_ax.hist(results.all_final_balances, bins=50, color="tab:green")
        hist_ax.axvline(results.median_final_balance, color="black", linewidth=1, label="Median")
        hist_ax.set_xlabel("Final balance")
        hist_ax.set_ylabel("Simulations")
        hist_ax.set_title("Final balance distribution")
        hist_ax.xaxis.set_major_formatter(dollars)
        hist_ax.legend()

    fig.tight_layout()
    plt.show()


PERCENT_FIELDS = {"equities_pct", "bonds_pct", "cash_pct"}

# may be negative (deflation)
RATE_FIELDS = {"inflation_rate"}

DOLLAR_FIELDS = {"starting_balance", "annual_withdrawal"}

LABEL_OVERRIDES = {
    "iterations": "Number of Simulations",
    "equities_pct": "Equities",
    "bonds_pct": "Bonds",
    "cash_pct": "Cash",
    "annual_withdrawal": "First Year Withdrawal",
}

ENTRY_HELP = {
    "iterations": f"How many Monte Carlo runs to perform (up to {FULL_ITERATIONS:,} for a full analysis).",
    "equities_pct": "Share of the portfolio in stocks (percentage).",
    "bonds_pct": "Share of the portfolio in bonds (percentage).",
    "cash_pct": "Share of the portfolio in cash (percentage).",
    "starting_balance": "Portfolio value on the first day of retirement.",
    "annual_withdrawal": "Amount withdrawn in the first year of retirement.",
    "years_in_retirement": "Number of years the portfolio must last.",
    "inflation_rate": "Yearly increase applied to the withdrawal (percentage).",
}


def _format(key, val) -> str:
    if key in PERCENT_FIELDS or key in RATE_FIELDS:
        return f"{val:.2f}%"
    if key in DOLLAR_FIELDS:
        return f"${val:,.0f}"
    return str(val)


def _load_inputs() -> SimulationConfig:
    """Parse GUI inputs and return a SimulationConfig."""
    values = {}
    for key, ent in entries.items():
        text = ent.get()
        if key in PERCENT_FIELDS:
            values[key] = parse_percent(text) * 100
        elif key in RATE_FIELDS:
            values[key] = parse_rate(text) * 100
        elif key in DOLLAR_FIELDS:
            values[key] = parse_dollars(text)
        else:
            try:
                values[key] = int(text.replace(",", "").strip())
            except ValueError as exc:
                raise ValueError(f"Invalid whole number: {text!r}") from exc
    return SimulationConfig(**values)


def _build_explanation(cfg: SimulationConfig) -> str:
    """Return a detailed explanation of inputs and calculations."""
    mean, volatility = blended_return_stats(*cfg.allocation)
    lines = [
        f"Simulations: {cfg.iterations:,}",
        f"Allocation: {cfg.equities_pct:g}% equities, {cfg.bonds_pct:g}% bonds, {cfg.cash_pct:g}% cash",
        "",
        "Asset class assumptions (annual, independent normal draws):",
    ]
    for name, stats in ASSET_CLASS_STATS.items():
        lines.append(
            f"  {name.title()}: mean {stats['mean'] * 100:.1f}%, std dev {stats['std_dev'] * 100:.1f}%"
        )
    lines += [
        f"Blended portfolio: expected {mean * 100:.2f}%, volatility {volatility * 100:.2f}%",
        "",
        "Each year of each simulation:",
        "  The balance grows by a randomly sampled blended return.",
        f"  The withdrawal (starting at ${cfg.annual_withdrawal:,.0f}) is subtracted,",
        f"  then increased by {cfg.inflation_rate:g}% for the next year.",
        "  A balance that reaches zero stays at zero.",
        "",
        f"A simulation succeeds if money remains after {cfg.years_in_retirement} years; "
        "the success rate is the share of successful simulations.",
    ]
    return "\n".join(lines)


def _show_results(cfg: SimulationConfig, results) -> None:
    label, description = rate_interpretation(results.success_rate)
    results_var.set(
        "\n".join(
            [
                f"Success rate: {results.success_rate:.1f}% ({label}: {description})",
                f"Median final balance: ${results.median_final_balance:,.0f}",
                f"5th percentile final balance: ${results.worst_case:,.0f}",
                f"95th percentile final balance: ${results.best_case:,.0f}",
            ]
        )
    )
    save_config(cfg, results)
    plot_results(results)


def poll_runner():
    """Apply worker events to the UI and reschedule while a run is active."""
    for event in runner.poll():
        if isinstance(event, Progress):
            progress_var.set(event.percent_complete)
            status_var.set(f"Running... {event.percent_complete}% complete")
        elif isinstance(event, Complete):
            progress_var.set(100)
            status_var.set("Complete")
            _show_results(last_cfg[0], event.results)
        elif isinstance(event, Failed):
            progress_var.set(0)
            status_var.set("Simulation failed")
            results_var.set("No results: the simulation failed.")
            messagebox.showerror("Simulation error", event.message)
    poll_job[0] = None
    if runner.state is RunState.RUNNING:
        poll_job[0] = root.after(POLL_INTERVAL_MS, poll_runner)


def run_sim():
    """Start a simulation using the current GUI inputs."""
    try:
        cfg = _load_inputs()
    except ValueError as exc:
        messagebox.showerror("Input error", str(exc))
        return

    last_cfg[0] = cfg
    runner.start(cfg)
    progress_var.set(0)
    status_var.set("Running... 0% complete")
    results_var.set("Results pending...")
    if poll_job[0] is None:
        poll_job[0] = root.after(POLL_INTERVAL_MS, poll_runner)


def cancel_sim():
    if runner.is_running:
        runner.cancel()
        progress_var.set(0)
        status_var.set("Cancelled")
        results_var.set("No results")


def reset_sim():
    runner.reset()
    progress_var.set(0)
    status_var.set("Idle")
    results_var.set("No results")


def explain_calculations():
    """Show a detailed explanation of the current configuration."""
    try:
        cfg = _load_inputs()
    except ValueError as exc:
        messagebox.showerror("Input error", str(exc))
        return
    messagebox.showinfo("Simulation Details", _build_explanation(cfg))


def apply_profile(_event=None):
    equities, bonds, cash = RISK_PROFILES[profile_var.get()]
    for key, val in (("equities_pct", equities), ("bonds_pct", bonds), ("cash_pct", cash)):
        entries[key].delete(0, tk.END)
        entries[key].insert(0, _format(key, val))


def load_defaults():
    defaults = config_from_dict({})
    for key in DEFAULT_INPUTS:
        ent = entries[key]
        ent.delete(0, tk.END)
        ent.insert(0, _format(key, getattr(defaults, key)))


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    root = tk.Tk()
    root.title("Monte Carlo Retirement Simulator")
    root.geometry("460x620")

    runner = SimulationRunner()
    last_cfg = [None]
    poll_job = [None]
    entries = {}

    saved = load_config().get("simulation", {})
    try:
        initial = config_from_dict(saved)
    except ValueError as exc:
        logging.getLogger(__name__).warning("Ignoring saved inputs: %s", exc)
        initial = config_from_dict({})

    label_width = max(
        len(LABEL_OVERRIDES.get(k, k.replace("_", " ").title())) for k in DEFAULT_INPUTS
    )

    input_frame = ttk.LabelFrame(root, text="Simulation Parameters")
    input_frame.pack(fill="x", padx=10, pady=5)

    row = ttk.Frame(input_frame)
    row.pack(fill="x", pady=2)
    ttk.Label(row, text="Risk Profile", width=label_width, anchor="w").pack(side="left")
    profile_var = tk.StringVar(value="moderate")
    combo = ttk.Combobox(
        row, textvariable=profile_var, values=list(RISK_PROFILES), state="readonly"
    )
    combo.pack(side="left", fill="x", expand=True)
    combo.bind("<<ComboboxSelected>>", apply_profile)
    ToolTip(combo, "Fill the allocation fields with a preset mix.")

    for key in DEFAULT_INPUTS:
        row = ttk.Frame(input_frame)
        row.pack(fill="x", pady=2)
        ttk.Label(
            row,
            text=LABEL_OVERRIDES.get(key, key.replace("_", " ").title()),
            width=label_width,
            anchor="w",
        ).pack(side="left")
        ent = ttk.Entry(row)
        ent.insert(0, _format(key, getattr(initial, key)))
        ent.pack(side="left", fill="x", expand=True)
        entries[key] = ent
        ToolTip(ent, ENTRY_HELP.get(key, ""))

    run_frame = ttk.Frame(root)
    run_frame.pack(fill="x", padx=10, pady=5)
    ttk.Button(run_frame, text="Run Simulations", command=run_sim).pack()
    ttk.Button(run_frame, text="Cancel", command=cancel_sim).pack()
    ttk.Button(run_frame, text="Reset", command=reset_sim).pack()
    ttk.Button(run_frame, text="Explain Calculations", command=explain_calculations).pack()
    ttk.Button(run_frame, text="Load Defaults", command=load_defaults).pack()

    progress_var = tk.IntVar(value=0)
    status_var = tk.StringVar(value="Idle")
    ttk.Progressbar(root, variable=progress_var, maximum=100).pack(fill="x", padx=10, pady=5)
    ttk.Label(root, textvariable=status_var).pack(anchor="w", padx=10)

    results_frame = ttk.LabelFrame(root, text="Results")
    results_frame.pack(fill="both", expand=True, padx=10, pady=5)
    results_var = tk.StringVar(value="No results")
    ttk.Label(results_frame, textvariable=results_var, wraplength=420).pack(anchor="w")

    root.mainloop()
