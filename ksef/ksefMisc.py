import os
import csv
import sys
import json
import datetime

ksefDirectionLabels = {
    "both": "wystawione (sprzedaż) i otrzymane (zakupy)",
    "sent": "wystawione (sprzedaż) - Subject1",
    "received": "otrzymane (zakupy) - Subject2"
}

CSV_COLUMNS = (
    "direction", "ksefNumber", "invoiceNumber", "issueDate", "dueDate", "currency",
    "sellerNIP", "sellerName", "buyerNIP", "buyerName", "netAmount", "grossAmount",
)

def print_line():
    print("--------------------------------------------------------------------\n")

def print_app_title(app_name, app_author):
    print(f"\n{app_name}")
    print(f"{app_author}")
    print_line()

def format_amount(amount) -> str:
    if amount is None:
        return "N/A"
    try:
        return f"{float(amount):.2f}"
    except (ValueError, TypeError):
        return str(amount)

def format_amount_csv(amount) -> str:
    return format_amount(amount).replace('.', ',')

def safe_filename(name: str) -> str:
    return str(name).replace('/', '_').replace('\\', '_').replace(':', '_')

def create_filename(filename, path=".", prefix_filename="ksef", fileextension=".json"):
    str_timestamp = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    return os.path.join(path, f"{prefix_filename}_{filename}_{str_timestamp}{fileextension}")

def _party(inv: dict, role: str) -> dict:
    party = inv.get(role)
    return party if isinstance(party, dict) else {}

def _rows(invoices_dict: dict):
    for direction, invoices in invoices_dict.items():
        for inv in invoices:
            yield direction, inv

def print_invoices_table(invoices_dict: dict, output_path: str = None):
    """
    Print invoices as a fixed-width table.

    Args:
        invoices_dict: {'received' | 'sent': [summary, ...]}
        output_path: Directory to also save the table in
    """
    rows = list(_rows(invoices_dict))
    if not rows:
        print("Nie znaleziono faktur.")
        return None

    lines = [
        "=" * 140,
        f"{'Kierunek':<10} {'Numer KSeF':<45} {'Numer faktury':<22} {'Data':<12} {'NIP kontrahenta':<16} {'Brutto':>15} {'Waluta':<6}",
        "=" * 140,
    ]
    for direction, inv in rows:
        counterparty = _party(inv, 'seller' if direction == 'received' else 'buyer')
        lines.append(
            f"{direction:<10} {str(inv.get('ksefNumber') or 'N/A')[:44]:<45} "
            f"{str(inv.get('invoiceNumber') or 'N/A')[:21]:<22} {str(inv.get('issueDate') or 'N/A')[:11]:<12} "
            f"{str(counterparty.get('taxId') or 'N/A')[:15]:<16} {format_amount(inv.get('grossAmount', inv.get('amount'))):>15} "
            f"{inv.get('currency') or 'PLN':<6}"
        )
    lines.append("=" * 140)
    lines.append(f"Razem: {len(rows)} faktur(y)")

    print("\n" + "\n".join(lines))

    if not output_path:
        return None
    tab_output_filename = create_filename("invoices-output-table", path=output_path, fileextension=".txt")
    with open(tab_output_filename, 'w', encoding='utf-8') as tab_file:
        tab_file.write("\n".join(lines) + "\n")
    return tab_output_filename

def print_invoices_csv(invoices_dict: dict, output_path: str = None):
    """Print invoices as semicolon separated CSV (decimal comma), optionally saving it."""
    records = []
    for direction, inv in _rows(invoices_dict):
        seller, buyer = _party(inv, 'seller'), _party(inv, 'buyer')
        records.append([
            direction,
            inv.get('ksefNumber') or '',
            inv.get('invoiceNumber') or '',
            inv.get('issueDate') or '',
            inv.get('dueDate') or '',
            inv.get('currency') or 'PLN',
            seller.get('taxId') or '',
            seller.get('name') or '',
            buyer.get('taxId') or '',
            buyer.get('name') or '',
            format_amount_csv(inv.get('netAmount')),
            format_amount_csv(inv.get('grossAmount', inv.get('amount'))),
        ])

    if not records:
        print("Nie znaleziono faktur.")
        return None

    writer = csv.writer(sys.stdout, delimiter=';', quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(CSV_COLUMNS)
    writer.writerows(records)

    if not output_path:
        return None
    csv_output_filename = create_filename("invoices-output-csv", path=output_path, fileextension=".csv")
    with open(csv_output_filename, 'w', encoding='windows-1250', errors='replace', newline='') as csv_file:
        writer = csv.writer(csv_file, delimiter=';', quoting=csv.QUOTE_ALL)
        writer.writerow(CSV_COLUMNS)
        writer.writerows(records)
    return csv_output_filename

def print_invoices_json(invoices_dict: dict, output_path: str = None):
    print(json.dumps(invoices_dict, indent=4, ensure_ascii=False, default=str))

    if not output_path:
        return None
    json_output_filename = create_filename("invoices-output-json", path=output_path, fileextension=".json")
    with open(json_output_filename, 'w', encoding='utf-8') as json_file:
        json.dump(invoices_dict, json_file, ensure_ascii=False, indent=4, default=str)
    return json_output_filename
