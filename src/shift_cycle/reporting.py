"""
Reporting and Export Module for the Shift Cycle Engine

Turns computed schedule ranges into pandas DataFrames (rotation grid,
per-user schedule, team statistics, anomalies) and exports them to CSV or
Excel.
"""

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from openpyxl.styles import Font, PatternFill

from .engine import ShiftCycleEngine
from .models import Unassigned, WorkScheduleDay

logger = logging.getLogger(__name__)


FILE_EXTENSIONS = {"csv": "csv", "excel": "xlsx"}


class ReportGenerator:
    """Builds tabular reports from an engine"""

    def __init__(self, engine: ShiftCycleEngine):
        self.engine = engine

    # ==================== DATAFRAMES ====================

    def create_schedule_dataframe(self, start: date, end: date,
                                  user_id: Optional[str] = None) -> pd.DataFrame:
        """Team grid for the range, or one user's schedule when user_id is given"""
        if user_id is not None:
            return self._create_user_schedule_dataframe(start, end, user_id)

        shift_ids = [shift.id for shift in self.engine.config.shifts]
        data = []
        for target, day in self.engine.compute_range(start, end).items():
            row = {
                'Date': target.isoformat(),
                'Day': target.strftime("%A"),
                'Day_In_Cycle': day.day_in_cycle,
            }
            for shift_id in shift_ids:
                row[shift_id.capitalize()] = ", ".join(day.teams_for_shift(shift_id))
            row['Rest'] = ", ".join(day.off_teams)
            data.append(row)
        return pd.DataFrame(data)

    def _create_user_schedule_dataframe(self, start: date, end: date, user_id: str) -> pd.DataFrame:
        data = []
        for target, day in self.engine.compute_range(start, end, user_id).items():
            row = {
                'Date': target.isoformat(),
                'Day': target.strftime("%A"),
                'User': user_id,
                'Team': '',
                'Status': 'Unassigned',
                'Shifts': '',
                'Start': '',
                'End': '',
                'Exception': '',
            }
            if isinstance(day, WorkScheduleDay):
                shifts = day.user_shifts
                row['Team'] = day.team.id if day.team else ''
                row['Status'] = 'Working' if shifts else 'Rest'
                row['Shifts'] = ", ".join(ws.shift.name for ws in shifts)
                row['Start'] = ", ".join(ws.effective_start.strftime("%H:%M") for ws in shifts)
                row['End'] = ", ".join(ws.effective_end.strftime("%H:%M") for ws in shifts)
                if day.applied_exception is not None:
                    row['Exception'] = day.applied_exception.exception_type.key
            data.append(row)
        return pd.DataFrame(data)

    def create_team_statistics_dataframe(self, start: date, end: date) -> pd.DataFrame:
        """Shift counts and worked hours per team over the range"""
        shifts = self.engine.config.shifts
        stats: Dict[str, Dict[str, Any]] = {}
        for team in self.engine.teams:
            stats[team.id] = {'Team': team.id}
            stats[team.id].update({shift.name: 0 for shift in shifts})
            stats[team.id].update({'Working_Days': 0, 'Rest_Days': 0, 'Total_Hours': 0.0})

        for day in self.engine.compute_range(start, end).values():
            for ws in day.shifts:
                for team_id in ws.teams:
                    stats[team_id][ws.shift.name] += 1
                    stats[team_id]['Working_Days'] += 1
                    stats[team_id]['Total_Hours'] += ws.shift.work_minutes / 60
            for team_id in day.off_teams:
                stats[team_id]['Rest_Days'] += 1

        return pd.DataFrame(list(stats.values()))

    def create_anomaly_dataframe(self, start: date, end: date,
                                 user_ids: Optional[List[str]] = None) -> pd.DataFrame:
        """Anomalies reported for the given users (all known users by default)"""
        if user_ids is None:
            user_ids = self.engine.user_ids
        data = []
        for user_id in user_ids:
            for day in self.engine.compute_range(start, end, user_id).values():
                for anomaly in day.anomalies:
                    data.append({
                        'Date': anomaly.date.isoformat(),
                        'User': anomaly.user_id,
                        'Kind': anomaly.kind.value,
                        'Chosen': anomaly.chosen_id,
                        'Discarded': ", ".join(anomaly.discarded_ids),
                        'Message': anomaly.message
                    })
        return pd.DataFrame(data, columns=['Date', 'User', 'Kind', 'Chosen', 'Discarded', 'Message'])

    def count_unassigned(self, start: date, end: date, user_id: str) -> int:
        days = self.engine.compute_range(start, end, user_id).values()
        return sum(1 for day in days if isinstance(day, Unassigned))

    # ==================== EXPORT ====================

    def export_schedule_excel(self, start: date, end: date, output_path: str,
                              user_id: Optional[str] = None) -> bool:
        """Export schedule, team statistics and anomalies to an Excel workbook"""
        try:
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                schedule_df = self.create_schedule_dataframe(start, end, user_id)
                schedule_df.to_excel(writer, sheet_name='Schedule', index=False)

                stats_df = self.create_team_statistics_dataframe(start, end)
                stats_df.to_excel(writer, sheet_name='Statistics', index=False)

                user_ids = [user_id] if user_id is not None else None
                anomaly_df = self.create_anomaly_dataframe(start, end, user_ids)
                anomaly_df.to_excel(writer, sheet_name='Anomalies', index=False)

                self._format_excel_worksheets(writer)

            logger.info(f"Schedule {start}..{end} exported to {output_path}")
            return True

        except (OSError, ValueError) as e:
            logger.error(f"Error exporting to Excel: {e}", exc_info=True)
            return False

    def _format_excel_worksheets(self, writer):
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(color="FFFFFF", bold=True)

        for worksheet in writer.sheets.values():
            for cell in worksheet[1]:
                cell.fill = header_fill
                cell.font = header_font

            for column in worksheet.columns:
                width = max(len(str(cell.value)) if cell.value is not None else 0 for cell in column)
                worksheet.column_dimensions[column[0].column_letter].width = min(width + 2, 50)

    def export_schedule_csv(self, start: date, end: date, output_path: str,
                            user_id: Optional[str] = None) -> bool:
        try:
            schedule_df = self.create_schedule_dataframe(start, end, user_id)
            schedule_df.to_csv(output_path, index=False)
            logger.info(f"Schedule {start}..{end} exported to {output_path}")
            return True

        except OSError as e:
            logger.error(f"Error exporting to CSV: {e}", exc_info=True)
            return False


class ExportManager:
    """Dispatches exports by format"""

    def __init__(self, engine: ShiftCycleEngine):
        self.engine = engine
        self.report_generator = ReportGenerator(engine)

    def export_schedule(self, start: date, end: date, format_type: str, output_path: str,
                        user_id: Optional[str] = None) -> bool:
        format_type = format_type.lower()
        if format_type == 'excel':
            return self.report_generator.export_schedule_excel(start, end, output_path, user_id)
        elif format_type == 'csv':
            return self.report_generator.export_schedule_csv(start, end, output_path, user_id)
        else:
            raise ValueError(f"Unsupported format: {format_type}")

    def get_default_filename(self, start: date, end: date, format_type: str,
                             user_id: Optional[str] = None) -> str:
        extension = FILE_EXTENSIONS.get(format_type.lower())
        if extension is None:
            raise ValueError(f"Unsupported format: {format_type}")
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        subject = f"user_{user_id}" if user_id is not None else "teams"
        return f"shift_cycle_{subject}_{start:%Y%m%d}_{end:%Y%m%d}_{timestamp}.{extension}"

    def batch_export(self, start: date, end: date, output_dir: str,
                     formats: List[str] = None, user_id: Optional[str] = None) -> Dict[str, bool]:
        """Export the range in several formats into output_dir"""
        if formats is None:
            formats = ['excel', 'csv']

        results = {}
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for format_type in formats:
            file_path = output_path / self.get_default_filename(start, end, format_type, user_id)
            try:
                results[format_type] = self.export_schedule(start, end, format_type,
                                                            str(file_path), user_id)
            except ValueError as e:
                logger.error(f"Error exporting {format_type}: {e}")
                results[format_type] = False

        return results
