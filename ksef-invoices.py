"""
Command line client for invoices in KSeF (Krajowy System e-Faktur).

Authenticates with a KSeF authorization token, lists received and/or issued
invoices (served from the local SQLite cache while it is fresh), and downloads
their XML or renders them to PDF.

Usage:
    python ksef-invoices.py --token-file token.txt
    python ksef-invoices.py --subject-type sent --output csv
    python ksef-invoices.py --download-xml ./xml --download-pdf ./pdf
    python ksef-invoices.py --xml-to-pdf ./xml --pdf-output-dir ./pdf
    python ksef-invoices.py --test-connection
"""

import argparse
import datetime
import json
import logging
import os
import sys

from ksef import ksefConfig
from ksef import ksefError
from ksef import ksefMisc
from ksef.ksefCache import ksefCache
from ksef.ksefClient import ksefClient, KSEF_URLS
from ksef.ksefCredential import ksefCredential
from ksef.ksefGateway import ksefGateway
from ksef.ksefPDFGenerator import ksefPDFGenerator
from ksef.ksefSession import ksefSession

APP_NAME = "KSeF Invoices"
APP_AUTHOR = "Pobieranie faktur z Krajowego Systemu e-Faktur"


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Fetch invoices from KSeF (Krajowy System e-Faktur)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s --token "your-ksef-token" --save-config
    %(prog)s --subject-type both --output json --output-dir ./raporty
    %(prog)s --download-xml ./faktury_xml --download-pdf ./faktury_pdf

    # Offline XML to PDF conversion (no authentication needed)
    %(prog)s --xml-to-pdf faktura.xml
    %(prog)s --xml-to-pdf ./faktury_xml/ --pdf-output-dir ./faktury_pdf/
        """
    )

    parser.add_argument('--config', help='Path to config.json (default: in the KSeF data directory)')

    offline_group = parser.add_argument_group('Offline XML to PDF conversion (no authentication needed)')
    offline_group.add_argument('--xml-to-pdf', metavar='PATH',
                               help='Convert XML file or directory of XML files to PDF (offline, no KSeF auth)')
    offline_group.add_argument('--pdf-output-dir', default='.',
                               help='Directory for converted PDF files (default: current directory)')

    auth_token = parser.add_argument_group('Token authentication')
    auth_token.add_argument('--token', help='KSeF authorization token')
    auth_token.add_argument('--token-file', help='File containing KSeF token')
    auth_token.add_argument('--save-config', action='store_true',
                            help='Store token and environment in the config file')
    auth_token.add_argument('--test-connection', action='store_true',
                            help='Only check that authentication with KSeF works')

    parser.add_argument('--env', choices=list(KSEF_URLS.keys()),
                        help='KSeF environment (default: from config, prod)')
    parser.add_argument('--api-url', help='Explicit KSeF API URL')
    parser.add_argument('--db-path', help='SQLite invoice cache file')
    parser.add_argument('--subject-type', choices=['received', 'sent', 'both'], default='received',
                        help='received=purchases (Subject2), sent=sales (Subject1) (default: received)')
    parser.add_argument('--limit', type=int, default=100, help='Page size (default: 100)')
    parser.add_argument('--offset', type=int, default=0, help='Page offset (default: 0)')
    parser.add_argument('--output', choices=['table', 'json', 'csv'], default='table',
                        help='Output format (default: table)')
    parser.add_argument('--output-dir', help='Also save the listing to this directory')
    parser.add_argument('--download-xml', metavar='DIR', help='Download invoice XML files to DIR')
    parser.add_argument('--download-pdf', metavar='DIR', help='Render invoice PDF files to DIR')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    return parser.parse_args(argv)


def convert_xml_to_pdf(xml_path: str, pdf_output_dir: str) -> int:
    if not os.path.exists(xml_path):
        print(f"Błąd: Ścieżka nie znaleziona: {xml_path}", file=sys.stderr)
        return 1

    if os.path.isfile(xml_path):
        xml_files = [xml_path]
    else:
        xml_files = sorted(
            f.path for f in os.scandir(xml_path)
            if f.is_file() and f.name.lower().endswith('.xml')
        )
        if not xml_files:
            print(f"Błąd: Nie znaleziono plików XML w: {xml_path}", file=sys.stderr)
            return 1

    os.makedirs(pdf_output_dir, exist_ok=True)
    pdf_generator = ksefPDFGenerator()

    print(f"Konwersja {len(xml_files)} plików XML na PDF...")
    ok_count = 0
    err_count = 0
    for xml_file in xml_files:
        base_name = os.path.splitext(os.path.basename(xml_file))[0]
        pdf_path = os.path.join(pdf_output_dir, f"{base_name}.pdf")
        try:
            with open(xml_file, 'rb') as f:
                pdf_generator.generate_pdf(f.read(), pdf_path, ksef_number=base_name)
            print(f"  OK: {xml_file} -> {pdf_path}")
            ok_count += 1
        except (ksefError.ksefError, OSError) as e:
            print(f"  Błąd: {xml_file}: {getattr(e, 'message', e)}", file=sys.stderr)
            err_count += 1

    print(f"\nGotowe. Skonwertowano: {ok_count}, błędy: {err_count}")
    return 0 if err_count == 0 else 1


def build_config(args) -> dict:
    config = ksefConfig.get_config(args.config) or dict(ksefConfig.DEFAULT_CONFIG)

    token = args.token
    if not token and args.token_file:
        if not os.path.exists(args.token_file):
            raise ksefError.ksefError(f"Plik tokenu nie znaleziony: {args.token_file}")
        with open(args.token_file, 'r', encoding='utf-8') as f:
            token = f.read().strip()
    if token:
        config['token'] = token
        config['auth_method'] = 'token'

    if args.env:
        config['environment'] = args.env
    if args.api_url:
        config['api_url'] = args.api_url
    if args.db_path:
        config['db_path'] = args.db_path
    if not config.get('db_path'):
        config['db_path'] = ksefConfig.default_db_path()

    return config


def save_payloads(gateway: ksefGateway, invoices: list, output_dir: str, kind: str):
    os.makedirs(output_dir, exist_ok=True)
    download = gateway.download_invoice_xml if kind == 'xml' else gateway.download_invoice_pdf

    for inv in invoices:
        ksef_number = inv.get('ksefNumber')
        if not ksef_number:
            continue
        content = download(ksef_number)
        if content is None:
            reason = gateway.last_error.message if gateway.last_error else 'brak danych'
            print(f"  Błąd pobierania {ksef_number}: {reason}", file=sys.stderr)
            continue
        filepath = os.path.join(output_dir, f"{ksefMisc.safe_filename(ksef_number)}.{kind}")
        with open(filepath, 'wb') as f:
            f.write(content)
        print(f"  Zapisano: {filepath}")


def main(argv=None):
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.xml_to_pdf:
        sys.exit(convert_xml_to_pdf(args.xml_to_pdf, args.pdf_output_dir))

    ksefMisc.print_app_title(APP_NAME, APP_AUTHOR)

    try:
        config = build_config(args)
        credential = ksefCredential.from_config(config)
        if not credential:
            print("Błąd: Wymagane jest podanie tokenu KSeF (--token/--token-file, KSEF_TOKEN lub plik konfiguracji)",
                  file=sys.stderr)
            sys.exit(1)
        if not credential.tax_id:
            print("Błąd: Token KSeF ma nieoczekiwany format - brak NIP", file=sys.stderr)
            sys.exit(1)

        if args.save_config:
            print(f"Zapisano konfigurację: {ksefConfig.save_config(config, args.config)}")

        client = ksefClient.from_config(config)
        session = ksefSession(
            client,
            credential=credential,
            strict_status_poll=bool(config.get('strict_status_poll')),
        )
        cache = ksefCache(config['db_path'])
        gateway = ksefGateway(
            client, session, cache,
            freshness=datetime.timedelta(minutes=config.get('cache_freshness_minutes') or 5),
        )

        print(f"Łączenie z KSeF (środowisko: {client.environment}, {client.base_url})...")
        print(f"NIP: {credential.tax_id}")

        try:
            if args.test_connection:
                if gateway.test_connection():
                    print("Połączenie z KSeF działa.")
                    return
                print(f"Błąd połączenia z KSeF: {gateway.last_error.message}", file=sys.stderr)
                sys.exit(1)

            session.start_refresh_loop(config.get('refresh_interval') or 60)

            directions = ['received', 'sent'] if args.subject_type == 'both' else [args.subject_type]
            print(f"\nPobieranie faktur {ksefMisc.ksefDirectionLabels[args.subject_type]}...")

            invoices_dict = {}
            for direction in directions:
                invoices = gateway.list_invoices(direction, limit=args.limit, offset=args.offset)
                if not invoices and gateway.last_error:
                    print(f"Nie udało się pobrać faktur ({direction}): {gateway.last_error.message}",
                          file=sys.stderr)
                invoices_dict[direction] = invoices

            if args.output == 'json':
                ksefMisc.print_invoices_json(invoices_dict, args.output_dir)
            elif args.output == 'csv':
                ksefMisc.print_invoices_csv(invoices_dict, args.output_dir)
            else:
                ksefMisc.print_invoices_table(invoices_dict, args.output_dir)

            all_invoices = [inv for invoices in invoices_dict.values() for inv in invoices]
            if args.download_xml and all_invoices:
                print(f"\nPobieranie plików XML do: {args.download_xml}")
                save_payloads(gateway, all_invoices, args.download_xml, 'xml')
            if args.download_pdf and all_invoices:
                print(f"\nGenerowanie plików PDF do: {args.download_pdf}")
                save_payloads(gateway, all_invoices, args.download_pdf, 'pdf')
        finally:
            session.stop_refresh_loop()
            if session.access_token:
                print("\nKończenie sesji...")
                session.terminate()
                print("Sesja zakończona.")
            cache.close()

    except ksefError.ksefError as e:
        print(f"\nBłąd KSeF: {e.message}", file=sys.stderr)
        if e.response_data:
            print(f"Szczegóły: {json.dumps(e.response_data, indent=2, default=str)}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
