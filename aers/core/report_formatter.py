"""
Report Formatter - Export of the finished adverse-event record

Responsibilities:
- Serialize a complete ReportRecord to a JSON-safe document
- Add metadata (report_id, generated_at, completion, schema_version)
- Verify the document carries every section and field key
- Save to file

Design principles:
- Pure serialization (completion comes from the Reconciliation Engine)
- No partial exports: a document missing any key is rejected

Output structure:
    {
        "schema_version": "1.0.0",
        "metadata": {"report_id": ..., "generated_at": ..., "completion_percentage": ...},
        "report": {patient_info, adverse_event, suspect_product,
                   concomitant_products, reporter_info, product_available}
    }
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from aers.contracts import ReportRecord
from aers.core.reconciliation import completion
from aers.core.record_schema import (
    OBJECT_SECTIONS,
    SECTION_KEYS,
    field_specs,
    record_to_json,
)

logger = logging.getLogger(__name__)


class ReportFormatter:
    """Serialization layer for exported reports"""

    def __init__(self, schema_version: str = "1.0.0"):
        self.schema_version = schema_version
        logger.info(f"Report Formatter initialized (schema_version={schema_version})")

    def format_report(self, record: ReportRecord, report_id: str) -> dict:
        """
        Build the export document

        Args:
            record: Complete record
            report_id: Unique report identifier

        Returns:
            dict: JSON-ready document

        Raises:
            TypeError: If record is not a ReportRecord
            ValueError: If report_id is empty or the document is incomplete

        Example:
            >>> formatter = ReportFormatter()
            >>> output = formatter.format_report(record, "abc123")
            >>> assert output['metadata']['report_id'] == 'abc123'
        """
        if not isinstance(record, ReportRecord):
            raise TypeError(f"record must be ReportRecord, got {type(record).__name__}")

        if not isinstance(report_id, str) or not report_id.strip():
            raise ValueError("report_id must be non-empty string")

        report = record_to_json(record)
        self._validate_complete(report)

        output = {
            "schema_version": self.schema_version,
            "metadata": self._generate_metadata(report_id, record),
            "report": report,
        }

        logger.info(
            f"Formatted report {report_id}: "
            f"{output['metadata']['completion_percentage']}% complete"
        )
        return output

    def _validate_complete(self, report: dict) -> None:
        missing = [key for key in SECTION_KEYS if key not in report]
        if missing:
            raise ValueError(f"Export is missing sections: {missing}")

        for section in OBJECT_SECTIONS:
            missing_fields = [
                spec.name for spec in field_specs(section)
                if spec.name not in report[section]
            ]
            if missing_fields:
                raise ValueError(f"Export section {section} is missing fields: {missing_fields}")

    def _generate_metadata(self, report_id: str, record: ReportRecord) -> dict:
        timestamp = datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')

        return {
            "report_id": report_id,
            "generated_at": timestamp,
            "completion_percentage": completion(record),
        }

    @staticmethod
    def save_to_file(data_dict: dict, file_path: str) -> str:
        """
        Save formatted dict to JSON file

        Args:
            data_dict: Output from format_report()
            file_path: Path to save file

        Returns:
            str: Absolute path to saved file

        Raises:
            TypeError: If data_dict is not JSON-serializable
            OSError: If file cannot be written
        """
        output_file = Path(file_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w') as f:
            json.dump(data_dict, f, indent=2, ensure_ascii=False)

        abs_path = str(output_file.absolute())
        logger.info(f"JSON saved to {abs_path}")
        return abs_path
