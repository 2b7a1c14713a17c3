import os
import sys

import requests

base_url = os.getenv("API_BASE_URL", "http://localhost:5000").rstrip("/")
url = f"{base_url}/api/categories?with_products=true"
origin = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:5173"

try:
    print(f"Sending GET request to {url} with Origin {origin}...")
    response = requests.get(url, headers={"Origin": origin}, timeout=10)
    print(f"Status Code: {response.status_code}")
    print(
        "Access-Control-Allow-Origin: "
        f"{response.headers.get('Access-Control-Allow-Origin', '(not set)')}"
    )
except requests.RequestException as e:
    print(f"Error: {e}")
    sys.exit(1)
