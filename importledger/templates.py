import csv
import io

from importledger.definitions import ImportDefinition


def build_template(definition: ImportDefinition) -> str:
    """Render the downloadable CSV: logical headers plus the sample rows."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(definition.field_names)
    for sample in definition.example_rows:
        writer.writerow([sample.get(name, "") for name in definition.field_names])
    return buffer.getvalue()


def template_file_name(definition: ImportDefinition) -> str:
    return f"{definition.import_type}_template.csv"
