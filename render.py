# render.py
import html
from typing import NewType

# User-originated text (form fields, headers). Never interpolate into HTML directly.
UntrustedText = NewType("UntrustedText", str)
# Text that is safe to embed in an HTML document as-is.
SafeHtml = NewType("SafeHtml", str)


def esc(s: UntrustedText | str | None) -> SafeHtml:
    """
    HTML escape for any user-derived text inserted into HTML strings.
    Always escape (including quotes).
    """
    return SafeHtml(html.escape(s or "", quote=True))


def render_error(message: SafeHtml, back_url: SafeHtml) -> str:
    """Minimal error page (送信エラー)."""
    return f"""<!doctype html>
<html lang="ja">
<head><meta charset="utf-8"><title>送信エラー</title></head>
<body>
<div style="font-family:system-ui;padding:24px">
  <h2>送信エラー</h2>
  <p>{message}</p>
  <p><a href="{back_url}">戻る</a></p>
</div>
</body>
</html>
"""


def render_thanks(
    name: SafeHtml,
    email: SafeHtml,
    inquiry_type: SafeHtml,
    site_name: SafeHtml,
    back_url: SafeHtml,
) -> str:
    return f"""<!doctype html>
<html lang="ja">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>送信完了 | {site_name}</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
</head>
<body class="bg-dark text-light">
  <div class="container py-5">
    <div class="p-4 p-md-5 rounded-4 border border-light border-opacity-10" style="background: rgba(255,255,255,.06);">
      <h1 class="h3 fw-bold mb-3">送信完了</h1>
      <p class="text-white-50 mb-4">お問い合わせを受け付けました。内容を確認後、折り返しご連絡します。</p>

      <div class="small text-white-50 mb-2">受付内容（確認）</div>
      <div class="mb-4">
        <div><span class="text-white-50">お名前：</span>{name}</div>
        <div><span class="text-white-50">メール：</span>{email}</div>
        <div><span class="text-white-50">種別：</span>{inquiry_type}</div>
      </div>

      <a class="btn btn-primary" href="{back_url}">戻る</a>
    </div>
  </div>
</body>
</html>
"""


def render_server_error() -> str:
    """Fallback HTML for unhandled exceptions (500)"""
    return "<!doctype html><meta charset='utf-8'><title>エラー</title><h1>サーバーエラーが発生しました。</h1>"
