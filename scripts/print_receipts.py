#!/usr/bin/env python3
import os, sys, csv, io, base64
import argparse
import pathlib
import requests
from PIL import Image, ImageDraw, ImageFont

# Print QR receipt cards for stored transactions by calling /admin/issue-qr
# Outputs: PNGs, CSV, and optional A4 PDF sheet with cards

def parse_args():
    p = argparse.ArgumentParser(description='Print QR receipt cards using the admin issuance API')
    p.add_argument('transaction_ids', nargs='*', help='transaction ids (or use --from-file)')
    p.add_argument('--from-file', help='file with one transaction id per line')
    p.add_argument('--base-url', default=os.environ.get('BASE_URL', 'http://localhost:5000'), help='Service base URL')
    p.add_argument('--admin-key', default=os.environ.get('ADMIN_API_KEY'), help='X-Admin-Key (env ADMIN_API_KEY)')
    p.add_argument('--batch', default=os.environ.get('BATCH_ID') or 'receipts', help='output folder name')
    p.add_argument('--out', default='out', help='output directory root (default: out)')
    p.add_argument('--no-pdf', action='store_true', help='skip generating a combined A4 PDF sheet')
    return p.parse_args()


def ensure_dir(p: pathlib.Path):
    p.mkdir(parents=True, exist_ok=True)


def load_ids(args) -> list[str]:
    ids = list(args.transaction_ids)
    if args.from_file:
        with open(args.from_file) as f:
            ids.extend(line.strip() for line in f if line.strip())
    return ids


def fetch_transaction(base_url: str, transaction_id: str) -> dict:
    r = requests.get(f"{base_url.rstrip('/')}/transactions/{transaction_id}", timeout=30)
    if r.status_code != 200:
        raise RuntimeError(f"transaction lookup failed {r.status_code}: {r.text[:200]}")
    return r.json()['data']


def issue_one(base_url: str, key: str, transaction_id: str):
    url = f"{base_url.rstrip('/')}/admin/issue-qr"
    headers = {
        'X-Admin-Key': key,
        'Accept': 'application/json',
        'Content-Type': 'application/json',
    }
    r = requests.post(url, headers=headers, json={'transaction_id': transaction_id}, timeout=30)
    if r.status_code != 200:
        raise RuntimeError(f"issue-qr failed {r.status_code}: {r.text[:200]}")
    data = r.json()
    return data['qr_data'], base64.b64decode(data['qr_png_b64'])


def _centered(draw, y, text, font, fill, width):
    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    draw.text(((width - (right - left)) // 2, y), text, fill=fill, font=font)


def make_card(qr_png_bytes: bytes, title: str, subtitle: str, lines: list[str], card_px=(800, 1100)) -> Image.Image:
    # Compose a printable card PNG with QR, item lines and total
    W, H = card_px
    bg = Image.new('RGB', (W, H), color=(255, 255, 255))
    draw = ImageDraw.Draw(bg)
    qr = Image.open(io.BytesIO(qr_png_bytes)).convert('RGB')
    qr_size = min(W - 120, int(H * 0.45))
    qr = qr.resize((qr_size, qr_size), Image.LANCZOS)
    qr_y = 160
    bg.paste(qr, ((W - qr_size) // 2, qr_y))
    try:
        font_title = ImageFont.truetype('Arial.ttf', 42)
        font_sub = ImageFont.truetype('Arial.ttf', 28)
        font_line = ImageFont.truetype('Arial.ttf', 24)
    except OSError:
        font_title = ImageFont.load_default()
        font_sub = ImageFont.load_default()
        font_line = ImageFont.load_default()
    _centered(draw, 30, title, font_title, (0, 0, 0), W)
    _centered(draw, 95, subtitle, font_sub, (30, 30, 30), W)
    y = qr_y + qr_size + 40
    for line in lines:
        _centered(draw, y, line, font_line, (60, 60, 60), W)
        y += 34
    return bg


def save_pdf_sheet(images: list[Image.Image], out_pdf: pathlib.Path, cols=2, rows=3, margin=50):
    if not images:
        return
    # A4 at 300 DPI ≈ 2480x3508 px
    page_w, page_h = 2480, 3508
    card_w = (page_w - margin * (cols + 1)) // cols
    card_h = (page_h - margin * (rows + 1)) // rows
    per_page = cols * rows
    pages = []
    for start in range(0, len(images), per_page):
        page = Image.new('RGB', (page_w, page_h), color=(255, 255, 255))
        for n, card in enumerate(images[start:start + per_page]):
            r, c = divmod(n, cols)
            card = card.resize((card_w, card_h), Image.LANCZOS)
            page.paste(card, (margin + c * (card_w + margin), margin + r * (card_h + margin)))
        pages.append(page)
    pages[0].save(out_pdf, save_all=True, append_images=pages[1:], resolution=300)


def main():
    args = parse_args()
    if not args.admin_key:
        print('ERROR: missing --admin-key or env ADMIN_API_KEY', file=sys.stderr)
        sys.exit(1)
    ids = load_ids(args)
    if not ids:
        print('ERROR: no transaction ids given', file=sys.stderr)
        sys.exit(1)

    out_root = pathlib.Path(args.out) / f"{args.batch}"
    png_dir = out_root / 'png'
    ensure_dir(png_dir)
    csv_path = out_root / 'receipts.csv'
    pdf_path = out_root / 'receipts.pdf'

    rows = []
    cards = []
    print(f"→ Issuing {len(ids)} receipt QRs from {args.base_url}…")
    for n, transaction_id in enumerate(ids, start=1):
        try:
            txn = fetch_transaction(args.base_url, transaction_id)
            qr_data, png_bytes = issue_one(args.base_url, args.admin_key, transaction_id)
        except (requests.RequestException, RuntimeError) as e:
            print(f"[{n}/{len(ids)}] ERROR: {e}", file=sys.stderr)
            sys.exit(2)
        png_path = png_dir / f"qr_{txn['id']}.png"
        with open(png_path, 'wb') as f:
            f.write(png_bytes)
        rows.append({'transaction_id': txn['id'], 'total': txn['total'], 'png': str(png_path.relative_to(out_root))})

        lines = [f"{i['quantity']} x {i['name']}  {i['price']:.2f}" for i in txn['items']]
        lines.append(f"Total {txn['total']:.2f}")
        cards.append(make_card(png_bytes, 'Show this QR at the service point', f"#{txn['id'][:8]}", lines))
        print(f"[{n}/{len(ids)}] transaction {txn['id']}")

    with open(csv_path, 'w', newline='') as f:
        w = csv.DictWriter(f, fieldnames=['transaction_id', 'total', 'png'])
        w.writeheader()
        for r in rows:
            w.writerow(r)

    if not args.no_pdf:
        save_pdf_sheet(cards, pdf_path)
        print(f"✅ Wrote PDF: {pdf_path}")

    print(f"✅ Done. CSV: {csv_path}\nPNG dir: {png_dir}")


if __name__ == '__main__':
    main()
