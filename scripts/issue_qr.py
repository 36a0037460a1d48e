import os
import sys
import base64
import requests

BASE_URL = os.environ.get('BASE_URL', 'http://localhost:5000')
ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')

if not ADMIN_API_KEY:
    print('Missing ADMIN_API_KEY in env')
    sys.exit(1)

if len(sys.argv) < 2:
    print('Usage: issue_qr.py <TRANSACTION_ID>')
    sys.exit(1)

payload = {'transaction_id': sys.argv[1].strip()}
headers = {'X-Admin-Key': ADMIN_API_KEY}
out = os.environ.get('OUT', 'qr.png')

# If WANT_PNG=1, request image directly
if os.environ.get('WANT_PNG', '0') == '1':
    r = requests.post(f"{BASE_URL}/admin/issue-qr", headers={**headers, 'Accept': 'image/png'}, json=payload, timeout=30)
    if r.status_code != 200:
        print('Error:', r.status_code, r.text)
        sys.exit(1)
    with open(out, 'wb') as f:
        f.write(r.content)
    print('PNG saved to', out)
    sys.exit(0)

# Default: JSON mode
r = requests.post(f"{BASE_URL}/admin/issue-qr", headers=headers, json=payload, timeout=30)
if r.status_code != 200:
    print('Error:', r.status_code, r.text)
    sys.exit(1)
res = r.json()
print('qr_data:', res['qr_data'])
with open(out, 'wb') as f:
    f.write(base64.b64decode(res['qr_png_b64']))
print('PNG saved to', out)
