"""
HTML Response Templates for the Slack account linking flow
Keeps page markup out of main.py
"""

from html import escape
from fastapi.responses import HTMLResponse

PAGE_STYLE = """
            body {
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
                max-width: 600px;
                margin: 50px auto;
                padding: 20px;
                text-align: center;
                line-height: 1.6;
                color: #333;
            }
            .box { padding: 20px; border-radius: 8px; margin: 20px 0; }
            .info { background: #f8f9fa; border-left: 4px solid #4A154B; text-align: left; }
            .error { background: #ffebee; border: 1px solid #f44336; }
            .btn {
                background: #4A154B;
                color: white;
                padding: 15px 30px;
                text-decoration: none;
                border-radius: 6px;
                display: inline-block;
                font-weight: 600;
                margin: 10px;
            }
"""

def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>{escape(title)}</title>
        <style>{PAGE_STYLE}</style>
    </head>
    <body>
        {body}
    </body>
    </html>
    """
    return HTMLResponse(content=html_content, status_code=status_code)

def link_account_page(token: str, base_url: str, minutes_left: int) -> HTMLResponse:
    """Landing page for a valid linking token"""
    confirm_url = f"{base_url}/settings/integrations/slack?token={token}"
    return _page("Link your Slack account", f"""
        <h2>Link your Slack account</h2>
        <div class="box info">
            <ol>
                <li>Sign in to your account</li>
                <li>Confirm the link on the integrations page</li>
                <li>Go back to Slack and ask about your files</li>
            </ol>
        </div>
        <p>This link expires in {minutes_left} minute{'' if minutes_left == 1 else 's'}.</p>
        <a href="{escape(confirm_url, quote=True)}" class="btn">Continue</a>
    """)

def link_expired_page() -> HTMLResponse:
    return _page("Link expired", """
        <h2>This link is no longer valid</h2>
        <div class="box error">
            Linking links expire after 15 minutes and can only be used once.
        </div>
        <p>Send any message to the bot in Slack to get a new link.</p>
    """, status_code=400)

