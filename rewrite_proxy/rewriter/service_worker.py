import logging

from rewrite_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

SERVICE_WORKER_PATH = "/sw.js"
CACHE_NAME = "rewrite-proxy-v1"
STATIC_EXTENSIONS = (".js", ".css", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".woff", ".woff2")


def generate_service_worker_script(proxy_base_url: str) -> str:
    """Network-first service worker that falls back to cached static assets."""
    extensions = ", ".join(f"'{ext}'" for ext in STATIC_EXTENSIONS)
    return f"""
// Injected service worker for the rewrite proxy
(function() {{
  'use strict';

  const CACHE_NAME = '{CACHE_NAME}';
  const PROXY_BASE = '{proxy_base_url.rstrip("/")}';
  const STATIC_EXTENSIONS = [{extensions}];

  self.addEventListener('install', event => {{
    self.skipWaiting();
  }});

  self.addEventListener('activate', event => {{
    event.waitUntil(
      caches.keys().then(names => Promise.all(
        names.filter(name => name !== CACHE_NAME).map(name => caches.delete(name))
      ))
    );
    self.clients.claim();
  }});

  self.addEventListener('fetch', event => {{
    const request = event.request;
    const url = new URL(request.url);

    if (request.method !== 'GET') {{
      return;
    }}
    if (url.protocol === 'chrome-extension:' || url.origin === self.location.origin) {{
      return;
    }}

    event.respondWith(
      handleRequest(request).catch(() => new Response('Network request failed', {{ status: 503 }}))
    );
  }});

  async function handleRequest(request) {{
    try {{
      const response = await fetch(request);
      if (response.ok && shouldCache(request)) {{
        const cache = await caches.open(CACHE_NAME);
        cache.put(request, response.clone());
      }}
      return response;
    }} catch (error) {{
      const cached = await caches.match(request);
      if (cached) {{
        return cached;
      }}
      throw error;
    }}
  }}

  function shouldCache(request) {{
    const pathname = new URL(request.url).pathname;
    return STATIC_EXTENSIONS.some(ext => pathname.endsWith(ext));
  }}
}})();
"""


def generate_service_worker_inject_code(proxy_base_url: str) -> str:
    return f"""
<!-- Injected service worker registration -->
<script>
(function() {{
  if ('serviceWorker' in navigator) {{
    navigator.serviceWorker.register('{proxy_base_url.rstrip("/")}{SERVICE_WORKER_PATH}', {{ scope: '/' }})
      .catch(error => console.warn('[Rewrite Proxy] Service worker registration failed:', error));
  }}
}})();
</script>
"""


def inject_service_worker(html: str, proxy_base_url: str) -> str:
    """Insert the registration block before ``</body>``, or append it."""
    try:
        inject_code = generate_service_worker_inject_code(proxy_base_url)
        if "</body>" in html:
            return html.replace("</body>", inject_code + "</body>", 1)
        return html + inject_code
    except Exception as e:
        log_exception_with_details(
            logger, "[Rewriter] Service worker injection failed:", e, logging.WARNING
        )
        return html
