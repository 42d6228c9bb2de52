#!/usr/bin/env python3
"""
KRS Monitor - new registry entries with email alerts

- Reads tracked KRS numbers and recipients from config.json (plus optional CSV sheets)
- Fetches the full extract (OdpisPelny) for each KRS from the public KRS API
- Compares the latest entry number against krs_state.json
- Emails a summary (sections touched, capital change, company name) for new entries
- Runs once per execution; sends only at the configured minute unless --force-send

Run: python krs_monitor.py [--force-send] [--dry-run] [--config PATH]
"""

import os
import csv
import sys
import json
import re
import html
import time
import random
import smtplib
import argparse
import httpx
import requests
from io import StringIO
from pathlib import Path
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from email.message import EmailMessage
from bs4 import BeautifulSoup

from krs_analyzer import analyze_odpis, format_pln

# ========================
# Config
# ========================

BASE_DIR = Path(__file__).resolve().parent
CONFIG_FILE = Path(os.getenv("KRS_CONFIG", BASE_DIR / "config.json"))
OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "."))
STATE_FILE = OUTPUT_DIR / "krs_state.json"

REGISTRY_URL = "https://api-krs.ms.gov.pl/api/krs/OdpisPelny/{krs}?rejestr=P&format=json"
USER_AGENT = "krs-monitor/1.0"
REQUEST_TIMEOUT = 30
SHEET_TIMEOUT = 20.0
FETCH_TRIES = 3

DEFAULT_SEND_AT = "14:00"
DEFAULT_TIMEZONE = "Europe/Warsaw"

# SMTP from the environment
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "465") or 465)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
MAIL_FROM = os.getenv("MAIL_FROM", "KRS Monitor <noreply@example.com>")
SEND_EMAILS = bool(SMTP_HOST and SMTP_USER and SMTP_PASS)


class ConfigError(Exception):
    """Missing or unusable configuration; aborts the run before any fetch."""


class RegistryError(Exception):
    """The KRS API could not deliver a JSON extract for one KRS number."""


def load_config(path=CONFIG_FILE) -> dict:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"config file unreadable: {path} ({e})")
    if not isinstance(cfg, dict):
        raise ConfigError(f"config file must hold a JSON object: {path}")

    try:
        parse_send_at(cfg.get("sendAt", DEFAULT_SEND_AT))
    except ValueError as e:
        raise ConfigError(f"bad sendAt: {e}")
    tz = cfg.get("timezone", DEFAULT_TIMEZONE)
    try:
        if not isinstance(tz, str):
            raise ValueError(tz)
        ZoneInfo(tz)
    except (ValueError, ZoneInfoNotFoundError):
        raise ConfigError(f"unknown timezone: {tz!r}")
    return cfg

# ========================
# Identifiers & recipients
# ========================

def normalize_krs(raw):
    """'28098' -> '0000028098'. None for anything that isn't 1-10 digits."""
    if isinstance(raw, bool) or raw is None:
        return None
    s = str(raw).strip()
    if not s.isdigit() or len(s) > 10:
        return None
    return s.zfill(10)


def merge_identifiers(*sources) -> list[str]:
    out = []
    for source in sources:
        for raw in source or []:
            krs = normalize_krs(raw)
            if krs is None:
                print(f"  ⚠️ Skipping invalid KRS number: {raw!r}")
                continue
            if krs not in out:
                out.append(krs)
    return out


def merge_recipients(*sources) -> list[str]:
    out = []
    for source in sources:
        for raw in source or []:
            addr = str(raw).strip()
            if "@" in addr and addr not in out:
                out.append(addr)
    return out


def fetch_sheet_column(url: str) -> list[str]:
    """First column of a CSV-exported sheet (header row dropped). [] on any HTTP error."""
    try:
        with httpx.Client(timeout=SHEET_TIMEOUT, follow_redirects=True) as client:
            resp = client.get(url)
            resp.raise_for_status()
            body = resp.text
    except httpx.HTTPError as e:
        print(f"  ⚠️ Sheet fetch failed ({url}): {e}")
        return []

    rows = list(csv.reader(StringIO(body)))
    cells = [row[0].strip() for row in rows[1:] if row and row[0].strip()]
    print(f"[sheet] {len(cells)} value(s) from {url}")
    return cells


def resolve_targets(cfg: dict, sheet_reader=fetch_sheet_column):
    """(krs numbers, recipients) from config lists plus the optional sheets."""
    krs_extra = sheet_reader(cfg["krsSheetUrl"]) if cfg.get("krsSheetUrl") else []
    rcpt_extra = sheet_reader(cfg["recipientsSheetUrl"]) if cfg.get("recipientsSheetUrl") else []

    krs_list = merge_identifiers(cfg.get("krs"), krs_extra)
    recipients = merge_recipients(cfg.get("recipients"), rcpt_extra)
    if not krs_list:
        raise ConfigError("no KRS numbers configured (config.krs / krsSheetUrl)")
    if not recipients:
        raise ConfigError("no recipients configured (config.recipients / recipientsSheetUrl)")
    return krs_list, recipients

# ========================
# KRS API
# ========================

def registry_url(krs: str) -> str:
    return REGISTRY_URL.format(krs=krs)


def fetch_odpis(krs: str, session: requests.Session | None = None, tries: int = FETCH_TRIES) -> dict:
    """Full extract JSON for one KRS number, retrying 429/503 and transport errors."""
    s = session or requests.Session()
    s.headers.update({"User-Agent": USER_AGENT, "Accept": "application/json"})
    url = registry_url(krs)

    attempt = 0
    while True:
        attempt += 1
        try:
            r = s.get(url, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            if attempt >= tries:
                raise RegistryError(f"request failed: {e}")
            delay = min(8.0, 1.5 ** attempt) + random.uniform(0, 0.5)
            print(f"[fetch] {e} — retrying {krs} in {delay:.1f}s")
            time.sleep(delay)
            continue

        if r.status_code in (429, 503) and attempt < tries:
            delay = min(8.0, 1.5 ** attempt) + random.uniform(0, 0.5)
            print(f"[fetch] {r.status_code} for {krs} — sleeping {delay:.1f}s")
            time.sleep(delay)
            continue
        if r.status_code != 200:
            raise RegistryError(f"KRS API returned HTTP {r.status_code}")
        try:
            return r.json()
        except ValueError:
            raise RegistryError("KRS API returned a non-JSON body")

# ========================
# State (last entry number per KRS)
# ========================

def load_state(path=STATE_FILE) -> dict:
    """
    {krs: last numerWpisu}. Missing file -> {}.
    Unreadable file is moved aside to <file>.bad. Legacy {krs: {"lastNumerWpisu": n}} is migrated.
    """
    path = Path(path)
    if not path.exists():
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        try:
            os.replace(path, f"{path}.bad")
            print(f"  ⚠️ State file unreadable. Renamed to {path}.bad and starting fresh.")
        except OSError:
            print("  ⚠️ State file unreadable and could not be renamed. Starting fresh.")
        return {}

    if not isinstance(data, dict):
        print("  ⚠️ Unexpected state format. Starting fresh.")
        return {}

    state = {}
    for krs, value in data.items():
        if isinstance(value, dict):
            value = value.get("lastNumerWpisu")
        try:
            state[krs] = int(value)
        except (TypeError, ValueError):
            continue
    return state


def save_state(state: dict, path=STATE_FILE) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, sort_keys=True)
    os.replace(tmp, path)
    print(f"[state] Saved {len(state)} KRS number(s) to {path}")


def is_new_entry(prev_last, last) -> bool:
    return prev_last is None or int(last) > int(prev_last)

# ========================
# Email
# ========================

def render_email(krs: str, analysis: dict, old_last=None):
    """(subject, html, text) for one analyzed KRS."""
    name = analysis.get("name") or ""
    last = analysis.get("last")
    subject = f"KRS {krs} – {name} – nowy wpis {last}" if name else f"KRS {krs} – nowy wpis {last}"

    esc = html.escape
    src = registry_url(krs)
    dzialy = analysis.get("dzialy") or []
    dz_html = "".join(f"<li>{esc(d)}</li>" for d in dzialy)
    dz_html = f"<ul>{dz_html}</ul>" if dz_html else '<p style="color:#6b7280">—</p>'

    kap = analysis.get("kapital")
    if kap:
        prev = format_pln(kap["poprzednia"]) if kap.get("poprzednia") is not None else "-"
        new = format_pln(kap["nowa"]) if kap.get("nowa") is not None else "-"
        kap_html = f"<p>Kapitał: zmiana (poprzednia: {esc(str(prev))}, nowa: {esc(str(new))})</p>"
    else:
        kap_html = "<p>Kapitał: brak zmian</p>"

    old_html = f"<p>Poprzedni wpis: {esc(str(old_last))}</p>" if old_last is not None else ""
    name_html = f"<p><strong>{esc(name)}</strong></p>" if name else ""

    body = f"""<!DOCTYPE html>
<html>
<body style="font-family:Arial,sans-serif;color:#111827">
<h2>KRS {esc(krs)} – nowy wpis {esc(str(last))}</h2>
{name_html}
{old_html}
<p>Działy:</p>
{dz_html}
{kap_html}
<p style="font-size:12px;color:#6b7280">Źródło: <a href="{esc(src)}">{esc(src)}</a></p>
</body>
</html>"""

    return subject, body, html_to_text(body)


def html_to_text(body: str) -> str:
    soup = BeautifulSoup(body, "html.parser")
    lines = [line.strip() for line in soup.get_text(separator="\n").splitlines()]
    return "\n".join(line for line in lines if line)


def send_email(subject: str, text: str, body_html: str, recipients: list[str]) -> None:
    """Send via SMTP; print instead when SMTP isn't configured."""
    if not SEND_EMAILS:
        print("\n=== EMAIL (printing because SMTP not configured) ===")
        print(f"To: {', '.join(recipients)}")
        print(subject)
        print(text)
        print("=== END EMAIL ===\n")
        return

    msg = EmailMessage()
    msg["From"] = MAIL_FROM
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    msg.set_content(text)
    msg.add_alternative(body_html, subtype="html")

    if SMTP_PORT == 587:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=30) as server:
            server.starttls()
            server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
    else:
        with smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, timeout=30) as server:
            server.login(SMTP_USER, SMTP_PASS)
            server.send_message(msg)
    print(f"  📧 Email sent to {len(recipients)} recipient(s)")

# ========================
# Run gate
# ========================

def is_send_time(now: datetime | None = None, send_at: str = DEFAULT_SEND_AT, tz: str = DEFAULT_TIMEZONE) -> bool:
    """True only during the send_at minute ("HH:MM") in the given timezone."""
    zone = ZoneInfo(tz)
    local = now.astimezone(zone) if now else datetime.now(zone)
    hh, mm = parse_send_at(send_at)
    return local.hour == hh and local.minute == mm


def parse_send_at(send_at) -> tuple[int, int]:
    """'14:00' -> (14, 0). ValueError for anything that isn't a valid HH:MM."""
    m = re.fullmatch(r"(\d{1,2}):(\d{2})", send_at) if isinstance(send_at, str) else None
    if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
        raise ValueError(f"expected HH:MM, got {send_at!r}")
    return int(m.group(1)), int(m.group(2))

# ========================
# One batch
# ========================

def run_batch(krs_list, state: dict, fetch, notify, send_only_on_change: bool = True) -> list[dict]:
    """
    Fetch + analyze every KRS in order, notify where needed, advance state in place.
    A failure for one KRS is recorded in its result entry and the loop moves on.
    """
    results = []
    for krs in krs_list:
        print(f"\n[fetch] KRS {krs}")
        try:
            payload = fetch(krs)
            analysis = analyze_odpis(payload)
            if not analysis["ok"]:
                raise RegistryError(analysis.get("error") or "analysis failed")

            prev_last = state.get(krs)
            changed = is_new_entry(prev_last, analysis["last"])
            print(f"  -> last entry {analysis['last']} (previous: {prev_last}); "
                  f"{'NEW' if changed else 'no change'}")

            notified = False
            if changed or not send_only_on_change:
                notify(krs, analysis, prev_last)
                notified = True

            state[krs] = analysis["last"]
            results.append({
                "krs": krs,
                "ok": True,
                "last": analysis["last"],
                "previous": prev_last,
                "changed": changed,
                "kapital": bool(analysis["kapital"]),
                "name": analysis["name"],
                "notified": notified,
            })
        except Exception as e:
            print(f"  ⚠️ KRS {krs} failed: {e}")
            results.append({"krs": krs, "ok": False, "error": str(e)})
    return results

# ========================
# Main
# ========================

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Email alerts for new KRS registry entries.")
    p.add_argument("--force-send", action="store_true", help="ignore the send-time gate")
    p.add_argument("--dry-run", action="store_true", help="print emails instead of sending; don't save state")
    p.add_argument("--config", default=str(CONFIG_FILE), help="path to config.json")
    return p.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    print("=" * 60)
    print("KRS MONITOR")
    print(f"[{datetime.now().strftime('%Y-%m-%d %H:%M:%S')}]")
    print("=" * 60)

    try:
        cfg = load_config(args.config)
        send_at = cfg.get("sendAt", DEFAULT_SEND_AT)
        tz = cfg.get("timezone", DEFAULT_TIMEZONE)
        if not args.force_send and not is_send_time(send_at=send_at, tz=tz):
            print(f"[info] Not {send_at} {tz} — skipping this run (use --force-send to override).")
            return 0
        krs_list, recipients = resolve_targets(cfg)
    except ConfigError as e:
        print(f"✗ Config error: {e}")
        return 1

    print(f"Tracking {len(krs_list)} KRS number(s); alerts to {len(recipients)} recipient(s)")
    if args.dry_run:
        print("[info] Dry run: emails are printed, state is not saved")
    elif not SEND_EMAILS:
        print("[info] SMTP not configured (SMTP_HOST/SMTP_USER/SMTP_PASS); emails will be printed")

    state = load_state()
    session = requests.Session()

    def notify(krs, analysis, old_last):
        subject, body_html, text = render_email(krs, analysis, old_last)
        if args.dry_run:
            print(f"\n=== EMAIL (dry run) ===\n{subject}\n{text}\n=== END EMAIL ===\n")
            return
        try:
            send_email(subject, text, body_html, recipients)
        except (smtplib.SMTPException, OSError) as e:
            raise RuntimeError(f"email failed: {e}")

    results = run_batch(
        krs_list, state,
        fetch=lambda krs: fetch_odpis(krs, session),
        notify=notify,
        send_only_on_change=cfg.get("sendOnlyOnChange", True) is not False,
    )

    if not args.dry_run:
        save_state(state)

    print("[summary]", json.dumps(results, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
