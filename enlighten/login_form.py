"""Pull the carry-over fields out of the Enlighten login page.

The login POST has to echo back the page's hidden inputs (authenticity token,
utf8 marker, ...) and its submit button, otherwise the portal rejects it.
"""

from html.parser import HTMLParser

_CARRIED_INPUT_TYPES = ("hidden", "submit")


class _FormFieldParser(HTMLParser):
    def __init__(self, action: str):
        super().__init__(convert_charrefs=True)
        self.action = action
        self.found = False
        self.fields: dict[str, str] = {}
        self._in_form = False

    def handle_starttag(self, tag, attrs):
        attrs = dict(attrs)
        if tag == "form":
            self._in_form = attrs.get("action") == self.action
            self.found = self.found or self._in_form
        elif tag == "input" and self._in_form:
            input_type = (attrs.get("type") or "").lower()
            name = attrs.get("name")
            if input_type in _CARRIED_INPUT_TYPES and name:
                self.fields[name] = attrs.get("value") or ""

    def handle_endtag(self, tag):
        if tag == "form":
            self._in_form = False


def scrape_form_fields(html: str, action: str) -> dict[str, str] | None:
    """Return {name: value} for the hidden/submit inputs of the form posting to `action`.

    Returns None if the document has no form with exactly that action.
    """
    parser = _FormFieldParser(action)
    parser.feed(html)
    parser.close()
    if not parser.found:
        return None
    return parser.fields
