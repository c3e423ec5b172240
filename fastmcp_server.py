"""
Rust Pointer Lifter — MCP Server

Exposes tools via the Model Context Protocol:

  1. lift_source          — lift a Rust snippet and return the rewritten code
  2. lift_file            — lift one file (optionally writing the result)
  3. lift_directory       — lift every .rs file under a directory
  4. analyze_pointers     — per-pointer permissions and inferred safe types
  5. explain_pointer_type — what a safe pointer type means and when it applies
"""

from mcp.server.fastmcp import FastMCP
import os
import sys

# Ensure lifter modules are importable
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from lifter.driver import LiftConfig, lift_directory as _lift_directory, lift_file as _lift_file
from lifter.errors import LifterError
from lifter.knowledge_base import format_type_explanation, get_all_types, get_type_info
from lifter.permissions import SafePointerType, format_permissions
from lifter.pipeline import LiftResult, lift_source as _lift_source
from lifter.pointer_inference import PointerPermissionEngine
from lifter.syntax import parse

# ═══════════════════════════════════════════════════════════════════════
#  Server Setup
# ═══════════════════════════════════════════════════════════════════════

mcp = FastMCP("Rust Pointer Lifter")


def _format_result(title: str, result: LiftResult) -> str:
    md = f"# {title}\n\n"
    md += "```rust\n" + result.text.rstrip("\n") + "\n```\n"
    if result.diagnostics:
        md += f"\n### Diagnostics ({len(result.diagnostics)})\n\n"
        md += "| Line | Pointer | Code | Message |\n"
        md += "|------|---------|------|---------|\n"
        for d in result.diagnostics:
            md += f"| {d.line} | `{d.name}` | {d.code} | {d.message} |\n"
    else:
        md += "\nNo pointers need manual attention.\n"
    return md


# ═══════════════════════════════════════════════════════════════════════
#  Tool 1 — Lift Source
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def lift_source(source: str) -> str:
    """
    Lifts a Rust translation unit: converts FFI types, replaces raw pointers
    with safe types where their usage allows it, lowers counting while loops
    to `for` loops and drops bare identifier statements.

    Args:
        source: Rust source code.
    """
    try:
        result = _lift_source(source)
    except LifterError as e:
        return f"❌ {e}"
    return _format_result("Lifted source", result)


# ═══════════════════════════════════════════════════════════════════════
#  Tool 2 — Lift File
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def lift_file(file_path: str, output_path: str = "") -> str:
    """
    Lifts one Rust file.  If output_path is given the result is written
    there, otherwise it is only returned.

    Args:
        file_path: Path to the .rs file.
        output_path: Optional path to write the lifted code to.
    """
    if not os.path.isfile(file_path):
        return f"❌ File not found: {file_path}"
    try:
        result = _lift_file(file_path)
    except (LifterError, OSError) as e:
        return f"❌ Failed to lift {file_path}: {e}"

    if output_path:
        try:
            os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
            with open(output_path, "w", encoding="utf-8") as f:
                f.write(result.text)
        except OSError as e:
            return f"❌ Could not write {output_path}: {e}"
    return _format_result(f"Lifted `{file_path}`", result)


# ═══════════════════════════════════════════════════════════════════════
#  Tool 3 — Lift Directory
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def lift_directory(input_dir: str, output_dir: str = "output", extensions: str = ".rs") -> str:
    """
    Lifts every matching file under input_dir into output_dir, mirroring the
    directory layout.  Files that fail to parse are reported and skipped.

    Args:
        input_dir: Directory to read sources from.
        output_dir: Directory to write lifted sources to.
        extensions: Comma-separated file extensions to lift (default '.rs').
    """
    if not os.path.isdir(input_dir):
        return f"❌ Not a directory: {input_dir}"
    exts = tuple(e.strip() for e in extensions.split(",") if e.strip()) or (".rs",)
    summary = _lift_directory(input_dir, output_dir, LiftConfig(extensions=exts, output_dir=output_dir))

    lifted = [r for r, o in summary.items() if o.status == "lifted"]
    failed = [r for r, o in summary.items() if o.status == "failed"]
    skipped = [r for r, o in summary.items() if o.status == "skipped"]
    warnings = sum(len(o.diagnostics) for o in summary.values())

    md = f"# Lift Summary — `{input_dir}` → `{output_dir}`\n\n"
    md += "| Metric | Count |\n|--------|-------|\n"
    md += f"| Files found | {len(summary)} |\n"
    md += f"| Lifted | {len(lifted)} |\n"
    md += f"| Failed | {len(failed)} |\n"
    md += f"| Skipped (binary) | {len(skipped)} |\n"
    md += f"| Pointer diagnostics | {warnings} |\n"

    if summary:
        md += "\n### Details\n\n"
        md += "| File | Status | Detail |\n"
        md += "|------|--------|--------|\n"
        for rel, outcome in summary.items():
            detail = outcome.message or f"{len(outcome.diagnostics)} diagnostic(s)"
            short = detail[:80] + "..." if len(detail) > 80 else detail
            md += f"| {rel} | **{outcome.status}** | {short} |\n"
    return md


# ═══════════════════════════════════════════════════════════════════════
#  Tool 4 — Analyze Pointers
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def analyze_pointers(source: str = "", file_path: str = "") -> str:
    """
    Runs pointer permission inference without rewriting anything and reports,
    for every raw pointer binding, the permissions observed, the safe type
    they resolve to, and whether every use can be expressed with it.

    Args:
        source: Rust source code (used if file_path is empty).
        file_path: Path to a .rs file to analyze instead.
    """
    if file_path:
        if not os.path.isfile(file_path):
            return f"❌ File not found: {file_path}"
        with open(file_path, "r", encoding="utf-8", errors="replace") as f:
            source = f.read()
    if not source.strip():
        return "❌ Provide either source or file_path."

    try:
        engine = PointerPermissionEngine(parse(source))
        bindings = engine.discover()
        engine.accumulate()
        types = engine.resolve()
        engine.rewrite()
    except LifterError as e:
        return f"❌ {e}"

    if not bindings:
        return "No raw pointer bindings found."

    flagged = {(d.name, d.line, d.column): d for d in engine.diagnostics}
    md = f"# Pointer Analysis ({len(bindings)} binding(s))\n\n"
    md += "| Pointer | Line | Kind | Permissions | Safe type | Status |\n"
    md += "|---------|------|------|-------------|-----------|--------|\n"
    for key in sorted(bindings, key=lambda k: (k.line, k.column)):
        b = bindings[key]
        safe = types[key]
        diag = flagged.get(tuple(key))
        status = "⚠️ left raw" if diag else "✅ rewritable"
        md += (f"| `{b.name}` | {b.line} | {b.kind} | {format_permissions(b.permissions)} "
               f"| `{safe.value}` | {status} |\n")

    if flagged:
        md += "\n### Needs manual attention\n\n"
        for d in flagged.values():
            md += f"- **{d.name}** (line {d.line}): {d.message}\n"
    return md


# ═══════════════════════════════════════════════════════════════════════
#  Tool 5 — Explain Pointer Type
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def explain_pointer_type(type_name: str = "") -> str:
    """
    Explains a safe pointer type: its Rust spelling, the permissions that
    select it, why it is sound, and a before/after example.  Without an
    argument, lists the whole permission table.

    Args:
        type_name: e.g. 'MUTABLE_SLICE', '&mut [T]', 'Box<T>'.
    """
    if not type_name:
        md = "# Safe Pointer Types\n\n"
        md += "| Type | Required permissions |\n|------|----------------------|\n"
        for safe_type, info in get_all_types().items():
            md += f"| `{safe_type.value}` | {info.permissions} |\n"
        return md

    info = get_type_info(type_name)
    if info is None:
        known = ", ".join(f"`{t.value}`" for t in SafePointerType)
        return f"❌ Unknown pointer type '{type_name}'. Known types: {known}"
    return format_type_explanation(info)


if __name__ == "__main__":
    mcp.run()
