"""Host page that mounts an instrumented artifact in an isolated frame."""
import html, json, textwrap

from sandbox.instrument import COMMAND_CHANNEL, DEBUG_CHANNEL

# Scripts run, but without allow-same-origin the frame cannot touch host state.
SANDBOX_FLAGS = "allow-scripts allow-forms allow-pointer-lock allow-popups allow-modals"

HOST_PAGE = textwrap.dedent("""\
    <!DOCTYPE html>
    <html>
    <head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>html,body{{margin:0;height:100%;background:#000}}iframe{{border:0;width:100%;height:100%}}</style>
    </head>
    <body>
    <iframe id="artifact" sandbox="{flags}" srcdoc="{srcdoc}"></iframe>
    <script>
    (function() {{
      var frame = document.getElementById('artifact');
      function forward(data) {{
    {bridge}
      }}
      window.addEventListener('message', function(event) {{
        if (event.source !== frame.contentWindow) return;
        if (!event.data || event.data.channel !== '{debug}') return;
        forward(event.data);
      }});
      window.__sendCommand = function(command) {{
        frame.contentWindow.postMessage({{ channel: '{command}', command: command }}, '*');
      }};
    }})();
    </script>
    </body>
    </html>""")

# Playwright exposes window.__forwardDebug on the page before the host page loads.
PLAYWRIGHT_BRIDGE = "    window.__forwardDebug(data);"


def websocket_bridge(ws_url: str, post_id: str) -> str:
    return textwrap.indent(textwrap.dedent(f"""\
        if (!window.__debugSocket) {{
          window.__debugQueue = [];
          window.__debugSocket = new WebSocket({json.dumps(ws_url)});
          window.__debugSocket.onopen = function() {{
            window.__debugQueue.forEach(function(m) {{ window.__debugSocket.send(m); }});
            window.__debugQueue = [];
          }};
        }}
        var msg = JSON.stringify({{ post: {json.dumps(post_id)}, channel: data.channel, payload: data.payload }});
        if (window.__debugSocket.readyState === 1) window.__debugSocket.send(msg);
        else window.__debugQueue.push(msg);"""), "    ")


def render_host_page(instrumented: str, bridge: str, title: str = "Preview") -> str:
    return HOST_PAGE.format(
        title=html.escape(title),
        flags=SANDBOX_FLAGS,
        srcdoc=html.escape(instrumented, quote=True),
        bridge=bridge,
        debug=DEBUG_CHANNEL,
        command=COMMAND_CHANNEL,
    )
