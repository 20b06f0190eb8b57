"""Fixed catalogue of page-side routines.

The live browser never evaluates planner-supplied script text. Callers name a
routine and pass plain JSON arguments; the routine source below is the only
code that runs in the page. Each routine is a single-argument JS function
returning a JSON-serializable value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

_IS_VISIBLE_JS = r"""
const __mcpIsVisible = (el) => {
  try {
    if (!el || !el.getBoundingClientRect) return false;
    const r = el.getBoundingClientRect();
    if (r.width <= 0 || r.height <= 0) return false;
    const style = globalThis.getComputedStyle ? globalThis.getComputedStyle(el) : null;
    if (!style) return true;
    if (style.display === 'none' || style.visibility === 'hidden') return false;
    if (Number(style.opacity || '1') === 0) return false;
    return true;
  } catch (e) {
    return false;
  }
};
const __mcpQuery = (selector) => {
  try {
    return document.querySelector(String(selector || ''));
  } catch (e) {
    return null;
  }
};
"""

ELEMENT_CENTER_JS = (
    "(args) => {"
    + _IS_VISIBLE_JS
    + r"""
  const el = __mcpQuery(args.selector);
  if (!el) return { found: false };
  try { el.scrollIntoView({ block: 'center', inline: 'center' }); } catch (e) {}
  const r = el.getBoundingClientRect();
  return {
    found: true,
    visible: __mcpIsVisible(el),
    tag: el.tagName.toLowerCase(),
    x: r.left + r.width / 2,
    y: r.top + r.height / 2,
  };
}"""
)

FOCUS_ELEMENT_JS = (
    "(args) => {"
    + _IS_VISIBLE_JS
    + r"""
  const el = __mcpQuery(args.selector);
  if (!el) return { found: false };
  try { el.scrollIntoView({ block: 'center' }); } catch (e) {}
  el.focus();
  if (args.clear) {
    if ('value' in el) {
      el.value = '';
      el.dispatchEvent(new Event('input', { bubbles: true }));
    } else if (el.isContentEditable) {
      el.textContent = '';
    }
  }
  return { found: true, focused: document.activeElement === el, visible: __mcpIsVisible(el) };
}"""
)

PAGE_INFO_JS = r"""(args) => ({
  url: window.location.href,
  title: document.title,
  readyState: document.readyState,
})"""

PAGE_CONTENT_JS = r"""(args) => ({
  url: window.location.href,
  title: document.title,
  html: document.documentElement ? document.documentElement.outerHTML : '',
})"""

SELECTOR_STATE_JS = (
    "(args) => {"
    + _IS_VISIBLE_JS
    + r"""
  const el = __mcpQuery(args.selector);
  return { present: !!el, visible: !!el && __mcpIsVisible(el) };
}"""
)

TEXT_PRESENT_JS = r"""(args) => {
  const body = document.body ? (document.body.innerText || '') : '';
  return { present: body.toLowerCase().includes(String(args.text || '').toLowerCase()) };
}"""

EXTRACT_TEXT_JS = r"""(args) => {
  const root = args.selector ? document.querySelector(args.selector) : document.body;
  if (!root) return { found: false, text: '' };
  const text = (root.innerText || root.textContent || '').trim();
  const limit = Number(args.maxChars || 4000);
  return { found: true, text: text.slice(0, limit), truncated: text.length > limit };
}"""

# Hint matching order: placeholder, then label[for], then accessible name/text.
RESOLVE_TARGET_JS = (
    "(args) => {"
    + _IS_VISIBLE_JS
    + r"""
  const hint = String(args.hint || '').trim().toLowerCase();
  const kind = args.kind === 'clickable' ? 'clickable' : 'input';
  const query = kind === 'clickable'
    ? 'a[href],button,input[type=submit],input[type=button],[role=button],[role=link],[onclick],summary'
    : 'input:not([type=hidden]),textarea,select,[contenteditable=""],[contenteditable=true]';
  const candidates = Array.from(document.querySelectorAll(query)).filter(__mcpIsVisible);
  if (!candidates.length) return { found: false };

  const has = (value) => !!hint && String(value || '').toLowerCase().includes(hint);
  const labelText = (el) => {
    if (!el.id) return '';
    const label = document.querySelector('label[for="' + CSS.escape(el.id) + '"]');
    return label ? label.textContent : '';
  };
  const accessibleName = (el) =>
    el.getAttribute('aria-label') || el.getAttribute('title') || el.getAttribute('name') ||
    (kind === 'clickable' ? (el.innerText || el.value || '') : '');

  let chosen = null;
  let via = 'first_visible';
  if (hint) {
    chosen = candidates.find((el) => has(el.getAttribute('placeholder')));
    if (chosen) via = 'placeholder';
    if (!chosen) {
      chosen = candidates.find((el) => has(labelText(el)));
      if (chosen) via = 'label';
    }
    if (!chosen) {
      chosen = candidates.find((el) => has(accessibleName(el)));
      if (chosen) via = 'name';
    }
  }
  if (!chosen) chosen = candidates[0];

  const positional = (el) => {
    const parts = [];
    let node = el;
    while (node && node.nodeType === 1 && node !== document.documentElement) {
      const tag = node.tagName.toLowerCase();
      let index = 1;
      let sib = node.previousElementSibling;
      while (sib) {
        if (sib.tagName === node.tagName) index += 1;
        sib = sib.previousElementSibling;
      }
      parts.unshift(tag + ':nth-of-type(' + index + ')');
      node = node.parentElement;
    }
    return parts.join(' > ');
  };

  const tag = chosen.tagName.toLowerCase();
  let selector;
  if (chosen.id) selector = '#' + CSS.escape(chosen.id);
  else if (chosen.getAttribute('name')) selector = tag + "[name='" + chosen.getAttribute('name').replace(/'/g, "\\'") + "']";
  else selector = positional(chosen);
  return { found: true, selector, via, tag };
}"""
)


@dataclass(frozen=True, slots=True)
class PageRoutine:
    name: str
    description: str
    params: tuple[str, ...]
    source: str

    def render_expression(self, args: dict[str, Any] | None = None) -> str:
        """Expression for Runtime.evaluate: immediately invokes the routine."""
        return f"({self.source})({json.dumps(self.bind(args))})"

    def render_function(self, args: dict[str, Any] | None = None) -> str:
        """Zero-argument function text for tool-servers whose evaluate tool takes a function."""
        return f"() => ({self.source})({json.dumps(self.bind(args))})"

    def bind(self, args: dict[str, Any] | None) -> dict[str, Any]:
        args = args or {}
        return {k: args[k] for k in self.params if k in args}


ROUTINES: dict[str, PageRoutine] = {
    r.name: r
    for r in (
        PageRoutine("element_center", "Scroll an element into view and return its center point.", ("selector",), ELEMENT_CENTER_JS),
        PageRoutine("focus_element", "Focus an element, optionally clearing its value.", ("selector", "clear"), FOCUS_ELEMENT_JS),
        PageRoutine("page_info", "Current URL, title and readyState.", (), PAGE_INFO_JS),
        PageRoutine("page_content", "Current URL, title and full HTML.", (), PAGE_CONTENT_JS),
        PageRoutine("selector_state", "Whether a selector is present and visible.", ("selector",), SELECTOR_STATE_JS),
        PageRoutine("text_present", "Whether the page text contains a string (case-insensitive).", ("text",), TEXT_PRESENT_JS),
        PageRoutine("extract_text", "Visible text of an element or of the whole page.", ("selector", "maxChars"), EXTRACT_TEXT_JS),
        PageRoutine("resolve_target", "Find an input or clickable element matching a hint; returns a CSS selector.", ("hint", "kind"), RESOLVE_TARGET_JS),
    )
}


def get_routine(name: Any) -> PageRoutine | None:
    if not isinstance(name, str):
        return None
    return ROUTINES.get(name.strip())


def describe_routines() -> str:
    """One line per routine, for the planning prompt."""
    lines = []
    for routine in ROUTINES.values():
        params = ", ".join(routine.params) or "none"
        lines.append(f"- {routine.name} (args: {params}): {routine.description}")
    return "\n".join(lines)
