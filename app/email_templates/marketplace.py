MARKETPLACE_EMAIL_HTML = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{{subject}}</title>
  </head>
  <body style="margin:0;padding:0;background:#f6f9fc;">
    <!-- Preheader (hidden preview text) -->
    <div style="display:none;max-height:0;overflow:hidden;opacity:0;color:transparent;">
      {{preheader}}
    </div>

    <table role="presentation" cellpadding="0" cellspacing="0" border="0" width="100%" style="background:#f6f9fc;">
      <tr>
        <td align="center" style="padding:28px 12px;">
          <table role="presentation" cellpadding="0" cellspacing="0" border="0" width="600" style="width:600px;max-width:600px;">
            <tr>
              <td style="background:#ffffff;border:1px solid #e6ebf1;border-radius:14px;overflow:hidden;">
                <!-- Header -->
                <table role="presentation" cellpadding="0" cellspacing="0" border="0" width="100%">
                  <tr>
                    <td style="padding:26px 26px 10px 26px;">
                      <div style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                        font-size:12px;font-weight:700;color:#6b7c93;text-transform:uppercase;letter-spacing:0.08em;">
                        {{eyebrow}}
                      </div>
                      <div style="margin-top:6px;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                        font-size:22px;font-weight:800;color:#0a2540;letter-spacing:-0.02em;line-height:1.25;">
                        {{heading}}
                      </div>
                      <div style="margin-top:10px;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                        font-size:14px;font-weight:500;color:#425466;line-height:1.6;">
                        Hi {{recipient_name}}, {{intro}}
                      </div>
                    </td>
                  </tr>
                </table>

                <div style="height:1px;background:#e6ebf1;"></div>

                <!-- Details -->
                <table role="presentation" cellpadding="0" cellspacing="0" border="0" width="100%">
                  <tr>
                    <td style="padding:18px 26px;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                      font-size:13px;color:#425466;line-height:1.7;">
                      {{details_html}}
                    </td>
                  </tr>
                  <tr>
                    <td style="padding:0 26px 24px 26px;">
                      <a href="{{cta_url}}" style="display:inline-block;background:#2b6cee;color:#ffffff;text-decoration:none;
                        font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                        font-size:14px;font-weight:700;padding:12px 18px;border-radius:10px;">
                        {{cta_label}}
                      </a>
                    </td>
                  </tr>
                </table>
              </td>
            </tr>

            <!-- Footer -->
            <tr>
              <td style="padding:16px 8px;text-align:center;font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Arial,sans-serif;
                font-size:12px;color:#8898aa;line-height:1.6;">
                Questions? Write to <a href="mailto:{{support_email}}" style="color:#6b7c93;">{{support_email}}</a><br />
                &copy; {{year}} {{brand_name}}
              </td>
            </tr>
          </table>
        </td>
      </tr>
    </table>
  </body>
</html>
"""
