"""
Instrumentation for untrusted artifacts before they are mounted in a sandboxed frame.

Two independent string transforms:
- capture(): error/console capture script, injected as the first child of <head>
  so it is registered before any artifact script runs.
- mute(): keeps audio/video silent until the first user interaction.

Both are idempotent: a script is skipped only when its exact text is already
present, so a document that merely mentions the marker attribute still gets it.
instrument() composes them.
"""
import re, textwrap

DEBUG_CHANNEL   = "iframe-debug"
COMMAND_CHANNEL = "iframe-command"

CAPTURE_MARKER = 'data-sandbox="capture"'
MUTE_MARKER    = 'data-sandbox="mute"'

CAPTURE_SCRIPT = textwrap.dedent("""\
    <script %(marker)s>
    (function() {
      var CHANNEL = '%(debug)s';
      var errors = [];
      var logs = [];
      var readySent = false;

      function post(payload) {
        payload.timestamp = payload.timestamp || Date.now();
        try { window.parent.postMessage({ channel: CHANNEL, payload: payload }, '*'); } catch (e) {}
      }

      function record(errData) {
        errors.push(errData);
        post(errData);
      }

      function serialize(arg) {
        try {
          if (arg instanceof Error) {
            return { __error: true, message: arg.message, stack: arg.stack, name: arg.name };
          }
          if (typeof arg === 'object' && arg !== null) {
            return JSON.parse(JSON.stringify(arg));
          }
          if (typeof arg === 'string' || typeof arg === 'number' || typeof arg === 'boolean') {
            return arg;
          }
          return String(arg);
        } catch (e) {
          return String(arg);
        }
      }

      function describe(arg) {
        if (typeof arg === 'string') return arg;
        if (arg && arg.__error) return (arg.name || 'Error') + ': ' + arg.message;
        try { return JSON.stringify(arg); } catch (e) { return String(arg); }
      }

      // Runtime errors and failed resources (img/script/link) share one capturing listener
      window.addEventListener('error', function(event) {
        var target = event.target;
        if (target && target !== window && target.tagName) {
          record({
            type: 'resource-error',
            category: 'ResourceLoadError',
            message: 'Failed to load: ' + (target.src || target.href || 'unknown'),
            tagName: target.tagName,
            timestamp: Date.now()
          });
          return;
        }
        var error = event.error;
        record({
          type: 'error',
          category: error && error.name ? error.name : 'Error',
          message: event.message || String(error),
          line: event.lineno,
          column: event.colno,
          stack: error && error.stack ? error.stack : null,
          source: event.filename,
          timestamp: Date.now()
        });
      }, true);

      window.addEventListener('unhandledrejection', function(event) {
        var reason = event.reason;
        record({
          type: 'error',
          category: 'UnhandledPromiseRejection',
          message: reason && reason.message ? reason.message : String(reason),
          stack: reason && reason.stack ? reason.stack : null,
          timestamp: Date.now()
        });
      });

      ['log', 'warn', 'info', 'error', 'debug'].forEach(function(level) {
        var original = console[level];
        console[level] = function() {
          var args = Array.prototype.slice.call(arguments).map(serialize);
          var logData = {
            type: 'console',
            level: level,
            args: args,
            message: args.map(describe).join(' '),
            timestamp: Date.now()
          };
          logs.push(logData);
          if (level === 'error') {
            errors.push({
              type: 'error',
              category: 'ConsoleError',
              message: logData.message,
              timestamp: logData.timestamp
            });
          }
          post(logData);
          if (original) original.apply(console, arguments);
        };
      });

      function ready() {
        if (readySent) return;
        readySent = true;
        post({ type: 'ready', errorsCount: errors.length });
      }
      if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', ready);
      } else {
        ready();
      }

      window.addEventListener('message', function(event) {
        var data = event.data;
        if (!data || data.channel !== '%(command)s') return;
        if (data.command === 'getErrors') {
          post({ type: 'all-errors', errors: errors.slice(), logs: logs.slice() });
        } else if (data.command === 'clear') {
          errors = [];
          logs = [];
        }
      });
    })();
    </script>
    """) % {"marker": CAPTURE_MARKER, "debug": DEBUG_CHANNEL, "command": COMMAND_CHANNEL}

MUTE_SCRIPT = textwrap.dedent("""\
    <script %(marker)s>
    (function() {
      var isMuted = true;

      function each(fn) {
        var media = document.querySelectorAll('audio, video');
        for (var i = 0; i < media.length; i++) fn(media[i]);
      }

      function muteAll() {
        if (!isMuted) return;
        each(function(m) { m.muted = true; m.volume = 0; });
      }

      var observer = new MutationObserver(muteAll);
      observer.observe(document.documentElement, { childList: true, subtree: true });

      function unmute() {
        if (!isMuted) return;
        isMuted = false;
        observer.disconnect();
        each(function(m) { m.muted = false; m.volume = 1; });
        ['click', 'touchstart', 'keydown'].forEach(function(type) {
          document.removeEventListener(type, unmute, true);
        });
      }

      ['click', 'touchstart', 'keydown'].forEach(function(type) {
        document.addEventListener(type, unmute, true);
      });

      muteAll();
      if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', muteAll);
      }
      window.addEventListener('load', muteAll);
    })();
    </script>
    """) % {"marker": MUTE_MARKER}

_DOCTYPE_RE    = re.compile(r"^\s*<!doctype[^>]*>", re.IGNORECASE)
_HTML_OPEN_RE  = re.compile(r"<html(?:\s[^>]*)?>", re.IGNORECASE)
_HEAD_OPEN_RE  = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_OPEN_RE  = re.compile(r"<body(?:\s[^>]*)?>", re.IGNORECASE)

FRAGMENT_TEMPLATE = textwrap.dedent("""\
    {doctype}
    <html>
    <head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    {script}</head>
    <body>
    {body}
    </body>
    </html>""")


def _wrap_fragment(fragment: str) -> str:
    doctype = "<!DOCTYPE html>"
    m = _DOCTYPE_RE.match(fragment)
    if m:
        doctype  = m.group(0).strip()
        fragment = fragment[m.end():].strip()
    return FRAGMENT_TEMPLATE.format(doctype=doctype, script=CAPTURE_SCRIPT, body=fragment)


def _ensure_body(doc: str) -> str:
    """Wrap everything between </head> and </html> in <body> when the document has none."""
    if _BODY_OPEN_RE.search(doc):
        return doc
    head_close = _HEAD_CLOSE_RE.search(doc)
    if not head_close:
        return doc
    end = doc.lower().rfind("</html")
    if end < head_close.end():
        end = len(doc)
    inner = doc[head_close.end():end]
    return f"{doc[:head_close.end()]}\n<body>{inner}</body>\n{doc[end:]}"


def capture(html: str) -> str:
    """Inject the error/console capture script as the first child of <head>."""
    if CAPTURE_SCRIPT in html:
        return html
    doc = html.strip()

    head = _HEAD_OPEN_RE.search(doc)
    if head:
        doc = doc[:head.end()] + "\n" + CAPTURE_SCRIPT + doc[head.end():]
        return _ensure_body(doc)

    root = _HTML_OPEN_RE.search(doc)
    if root:
        doc = doc[:root.end()] + "\n<head>\n" + CAPTURE_SCRIPT + "</head>" + doc[root.end():]
        return _ensure_body(doc)

    return _wrap_fragment(doc)


def mute(html: str) -> str:
    """Inject the mute-until-interaction script."""
    if MUTE_SCRIPT in html:
        return html
    head_close = _HEAD_CLOSE_RE.search(html)
    if head_close:
        return html[:head_close.start()] + MUTE_SCRIPT + html[head_close.start():]
    body = _BODY_OPEN_RE.search(html)
    if body:
        return html[:body.end()] + "\n" + MUTE_SCRIPT + html[body.end():]
    return MUTE_SCRIPT + html


def instrument(html: str) -> str:
    return mute(capture(html or ""))
