"""
Main Entry Point for the Shift Cycle Engine

Command line front end: loads the stored configuration, computes the
schedule for a date range and prints or exports it.
"""

import argparse
import logging
import sys
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from shift_cycle.data_manager import DataManager, DataManagerError
from shift_cycle.engine import ShiftCycleEngine
from shift_cycle.models import DayResult, ScheduleEngineError, WorkScheduleDay
from shift_cycle.reporting import ExportManager


def setup_logging():
    """Setup application logging"""
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)

    log_file = log_dir / f"shift_cycle_{datetime.now().strftime('%Y%m%d')}.log"

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )

    return logging.getLogger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Global exception handler"""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return

    logger = logging.getLogger(__name__)
    logger.error(
        "Uncaught exception",
        exc_info=(exc_type, exc_value, exc_traceback)
    )


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shift-cycle",
        description="Compute rotating 4-2 shift schedules"
    )
    parser.add_argument("--data-file", dest="data_file", required=True,
                        help="JSON data file with settings, rules, assignments and exceptions")
    parser.add_argument("--scheme-start", dest="scheme_start", type=_iso_date, default=None,
                        help="set and store the rotation start date")
    parser.add_argument("--start", dest="start", type=_iso_date, required=True)
    parser.add_argument("--end", dest="end", type=_iso_date, required=True)
    parser.add_argument("--user", dest="user_id", default=None,
                        help="show the schedule of one user instead of the team grid")
    parser.add_argument("--export", dest="export_format", choices=["csv", "excel"], default=None)
    parser.add_argument("--output", dest="output", default=None,
                        help="export file path (default: generated name in the current directory)")
    return parser


def format_day(day: DayResult) -> str:
    """One printable line per computed day"""
    if not isinstance(day, WorkScheduleDay):
        return f"{day.date.isoformat()} user {day.user_id}: unassigned"

    if day.user_id is None:
        parts = [f"{ws.shift.id}: {', '.join(ws.teams)}" for ws in day.shifts]
        parts.append(f"rest: {', '.join(day.off_teams)}")
        return f"{day.date.isoformat()} [day {day.day_in_cycle}] " + " | ".join(parts)

    shifts = day.user_shifts
    if shifts:
        status = ", ".join(
            f"{ws.shift.name} {ws.effective_start:%H:%M}-{ws.effective_end:%H:%M}" for ws in shifts
        )
    else:
        status = "rest"
    if day.applied_exception is not None:
        status += f" ({day.applied_exception.exception_type.key})"
    line = f"{day.date.isoformat()} user {day.user_id} team {day.team.id}: {status}"
    for anomaly in day.anomalies:
        line += f"\n    warning: {anomaly.message}"
    return line


class ShiftCycleApp:
    """Command line application"""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.logger = logging.getLogger(__name__)
        self.data_manager = None
        self.engine = None

    def initialize(self) -> bool:
        try:
            self.data_manager = DataManager(self.args.data_file)
            if self.args.scheme_start is not None:
                self.data_manager.set_scheme_start_date(self.args.scheme_start)
                self.data_manager.save_data()
            self.engine = self.data_manager.build_engine()
            return True

        except (DataManagerError, ScheduleEngineError) as e:
            self.logger.error(f"Failed to initialize: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return False

    def run(self) -> bool:
        if not self.initialize():
            return False

        try:
            days = self.engine.compute_range(self.args.start, self.args.end, self.args.user_id)
        except (ValueError, ScheduleEngineError) as e:
            self.logger.error(f"Failed to compute schedule: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return False

        for day in days.values():
            print(format_day(day))

        if self.args.export_format:
            return self.export(self.engine)
        return True

    def export(self, engine: ShiftCycleEngine) -> bool:
        export_manager = ExportManager(engine)
        output = self.args.output or export_manager.get_default_filename(
            self.args.start, self.args.end, self.args.export_format, self.args.user_id
        )
        success = export_manager.export_schedule(
            self.args.start, self.args.end, self.args.export_format, output, self.args.user_id
        )
        if success:
            print(f"Exported to {output}")
        else:
            print(f"Export to {output} failed", file=sys.stderr)
        return success


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    app = ShiftCycleApp(args)
    return 0 if app.run() else 1


def main():
    """Main entry point"""
    sys.excepthook = handle_exception

    logger = setup_logging()
    logger.info("Starting Shift Cycle Engine")

    sys.exit(run_cli())


if __name__ == "__main__":
    main()
