import sys, subprocess, os, re, glob, base64, tempfile, shutil, argparse, time, typing
from dataclasses import dataclass, replace

__version__="0.3.0"

def _env_first(names, default=None):
    for n in (names or []):
        v=os.getenv(n)
        if v is not None and str(v).strip() != "":
            return v
    return default

def _env_float_first(names, default=None):
    v=_env_first(names, None)
    if v is None:
        return default
    try:
        f=float(str(v).strip())
    except Exception:
        return default
    return f if f > 0 else default

def _env_int_first(names, default_int: int) -> int:
    v=_env_first(names, None)
    if v is None:
        return int(default_int)
    try:
        return int(str(v).strip())
    except Exception:
        return int(default_int)

def _normalize_base_url(endpoint: str) -> str:
    s=str(endpoint or "").strip()
    if not s:
        return s
    if "://" not in s:
        s="http://"+s
    s=s.rstrip("/")
    if s.endswith("/api"):
        s=s[:-4]
    return s

OLLAMA_ENDPOINT=_normalize_base_url(_env_first(("OLLAMA_ENDPOINT","OLLAMA_HOST"), "http://localhost:11434"))
# None means wait forever, which is what the tool has always done.
LLM_TIMEOUT=_env_float_first(("LLM_TIMEOUT",), None)
OCRMYPDF=os.getenv("OCRMYPDF","ocrmypdf")
GS=os.getenv("GS","gs")

VISION_MODEL="qwen2.5vl:7b"
VISION_MAX_PAGES=3
VISION_DPI=_env_int_first(("VISION_DPI",), 300)
MAX_NAME_LEN=64
PNG_SIGNATURE=b"\x89PNG\r\n\x1a\n"

DEFAULT_PROMPT=("Extract the most important keywords from this text and create a filename. "
                "The filename should be concise (max 64 chars), use only the most important keywords, "
                "and separate words with dashes. Do not include any explanations or additional text.")
VISION_PROMPT_SUFFIX=" Analyze these images and create a filename based on their content."
OCR_PROMPT_SEPARATOR=" Text: "

RENAMED="renamed"
KEPT="kept"
FAILED="failed"

_PROGRESS_ENABLED=True

def _fmt_secs(s):
    try:
        s=float(s)
    except Exception:
        return "?s"
    if s < 1: return f"{int(s*1000)}ms"
    if s < 60: return f"{s:.1f}s"
    m=int(s//60); r=s-(m*60)
    if m < 60: return f"{m}m{int(r):02d}s"
    h=int(m//60); mm=m-(h*60)
    return f"{h}h{mm:02d}m"

def _progress(msg):
    if not _PROGRESS_ENABLED: return
    sys.stdout.write(str(msg).rstrip()+"\n")
    sys.stdout.flush()

def _run(cmd, text=True): return subprocess.run(cmd, capture_output=True, text=text)

def _tool_err(r):
    err=r.stderr or r.stdout or ""
    if isinstance(err, bytes):
        err=err.decode("utf-8", "replace")
    return err.strip()

def _tool_exists(path_or_name):
    if not path_or_name: return None
    if os.path.isabs(path_or_name):
        if os.path.isfile(path_or_name) and os.access(path_or_name, os.X_OK):
            return path_or_name
        return None
    return shutil.which(path_or_name)


class RenameError(RuntimeError):
    """A per-file failure; `stage` says which step gave up."""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage=stage


@dataclass(frozen=True)
class Config:
    auto: bool=False
    prompt: str=DEFAULT_PROMPT
    model: str=VISION_MODEL
    vision: bool=True
    output_dir: typing.Optional[str]=None


class RunState:
    """Batch-wide state. `auto` only ever goes from False to True."""

    def __init__(self, auto: bool=False):
        self.auto=bool(auto)

    @classmethod
    def from_config(cls, cfg: Config) -> "RunState":
        return cls(auto=cfg.auto)


def default_config() -> Config:
    return Config()

def prepare_config(cfg: Config) -> Config:
    out=cfg
    if out.output_dir:
        out=replace(out, output_dir=os.path.normpath(out.output_dir))
    if out.vision and out.model != VISION_MODEL:
        print(f"Note: Switching to {VISION_MODEL} model for vision-based processing")
        out=replace(out, model=VISION_MODEL)
    return out

def sanitize_filename(s: str, max_len: int=MAX_NAME_LEN) -> str:
    s=re.sub(r"[^A-Za-z0-9-]", "-", str(s or ""))
    s=re.sub(r"-+", "-", s)
    s=s.strip("-")
    # A cut can end on a dash; stripping it means 65 allowed chars can give fewer than 64.
    return s[:max_len].rstrip("-")

def check_dependencies(cfg: Config) -> typing.Optional[str]:
    import requests
    for name, tool in (("ocrmypdf", OCRMYPDF), ("gs", GS)):
        if not _tool_exists(tool):
            return f"error: {name} is not installed. Please install it first"

    try:
        requests.get(f"{OLLAMA_ENDPOINT}/api/version", timeout=LLM_TIMEOUT)
    except requests.RequestException:
        return "error: Ollama service is not running. Please start it with 'ollama serve'"

    try:
        resp=requests.get(f"{OLLAMA_ENDPOINT}/api/tags", timeout=LLM_TIMEOUT)
    except requests.RequestException as e:
        return f"error checking Ollama models: {e}"
    try:
        models=resp.json().get("models") or []
        names=[m.get("name") for m in models if isinstance(m, dict)]
    except Exception as e:
        return f"error parsing Ollama models response: {e}"

    if cfg.model not in names:
        return (f"error: {cfg.model} model is not installed in Ollama.\n"
                f"Please install it by running: ollama pull {cfg.model}")
    return None

def _ocr_sidecar(pdf_input):
    with tempfile.TemporaryDirectory(prefix="pdf_rename_ocr_") as td:
        stem=os.path.splitext(os.path.basename(pdf_input))[0] or "page"
        sidecar=os.path.join(td, stem+".txt")
        # ocrmypdf rewrites the input in place; the sidecar is all we keep.
        r=_run([OCRMYPDF, pdf_input, pdf_input,
                "--force-ocr",
                "--sidecar", sidecar,
                "--optimize", "0",
                "--output-type", "pdf",
                "--fast-web-view", "0"])
        if r.returncode != 0:
            err=_tool_err(r)
            raise RenameError("ocr", f"OCR failed for {pdf_input} (rc={r.returncode}): {err[:200]}")
        if not os.path.exists(sidecar):
            raise RenameError("ocr", f"Text file not created for {pdf_input}")
        with open(sidecar, "rb") as f:
            return f.read().decode("utf-8", "replace")

def extract_text(pdf_input: str) -> str:
    t0=time.monotonic()
    _progress(f"Running OCR via ocrmypdf: {os.path.basename(pdf_input)}")
    try:
        text=_ocr_sidecar(pdf_input)
    except OSError as e:
        raise RenameError("ocr", f"OCR failed for {pdf_input}: {e}")
    if not text.strip():
        raise RenameError("ocr", f"Could not extract text from {pdf_input}")
    _progress(f"  ocr ok: {len(text)} chars in {_fmt_secs(time.monotonic()-t0)}")
    return text

def render_page_png(pdf_input: str, page: int, dpi: int=VISION_DPI) -> bytes:
    try:
        r=_run([GS, "-q", "-dNOPAUSE", "-dBATCH", "-dSAFER",
                "-sDEVICE=png16m", f"-r{dpi}",
                f"-dFirstPage={page}", f"-dLastPage={page}",
                "-sOutputFile=-", pdf_input], text=False)
    except OSError as e:
        raise RuntimeError(f"could not run ghostscript: {e}")
    if r.returncode != 0:
        raise RuntimeError(f"ghostscript failed (rc={r.returncode}): {_tool_err(r)[:200]}")
    data=r.stdout or b""
    if not data:
        raise RuntimeError(f"no PNG data produced for page {page}")
    if not data.startswith(PNG_SIGNATURE):
        raise RuntimeError(f"invalid PNG data for page {page}")
    return data

def render_pages(pdf_input: str, max_pages: int=VISION_MAX_PAGES) -> typing.List[bytes]:
    t0=time.monotonic()
    _progress(f"Rendering up to {max_pages} page(s) via ghostscript (dpi={VISION_DPI})")
    images=[]
    for page in range(1, max_pages+1):
        try:
            images.append(render_page_png(pdf_input, page))
        except RuntimeError as e:
            # The first page that will not render is taken as the end of the document.
            _progress(f"  stopped at page {page}: {str(e)[:200]}")
            break
    _progress(f"  rendered {len(images)} page(s) in {_fmt_secs(time.monotonic()-t0)}")
    return images

def generate(model: str, prompt: str, images: typing.Optional[typing.List[bytes]]=None,
             timeout=None) -> typing.Tuple[typing.Optional[str], typing.Optional[str]]:
    import requests
    payload={"model":model,"prompt":prompt,"stream":False}
    if images:
        payload["images"]=[base64.b64encode(b).decode("ascii") for b in images]
    if timeout is None:
        timeout=LLM_TIMEOUT
    try:
        resp=requests.post(f"{OLLAMA_ENDPOINT}/api/generate", headers={"Content-Type":"application/json"},
                           json=payload, timeout=timeout)
    except requests.RequestException as e:
        return None, f"error calling Ollama API: {e}"
    try:
        j=resp.json()
    except ValueError as e:
        if resp.status_code >= 400:
            return None, f"HTTP {resp.status_code}: {(resp.text or '').strip()[:200]}"
        return None, f"error parsing response: {e}"
    if not isinstance(j, dict):
        return None, f"error parsing response: unexpected body {str(j)[:200]}"
    if j.get("error"):
        return None, str(j.get("error"))
    if resp.status_code >= 400:
        return None, f"HTTP {resp.status_code}: {str(j)[:200]}"
    out=j.get("response")
    return ("" if out is None else str(out)), None

def _candidate_or_raise(raw: str) -> str:
    name=sanitize_filename(raw)
    if not name:
        raise RenameError("name", f"model output {str(raw)[:80]!r} does not contain a usable filename")
    return name

def generate_filename(cfg: Config, prompt: str) -> str:
    t0=time.monotonic()
    _progress(f"  calling Ollama (text) model={cfg.model}")
    out, err=generate(cfg.model, prompt)
    if err:
        raise RenameError("inference",
            f"error from Ollama API: {err}\n"
            f"Please ensure that the {cfg.model} model is installed by running:\n"
            f"  ollama pull {cfg.model}")
    if not (out or "").strip():
        raise RenameError("inference",
            f"Empty response from Ollama API\n"
            f"Please ensure that the {cfg.model} model is installed and working correctly:\n"
            f"  1. Check if the model is installed: ollama list\n"
            f"  2. If not installed, run: ollama pull {cfg.model}\n"
            f"  3. If installed but not working, try: ollama rm {cfg.model} && ollama pull {cfg.model}")
    _progress(f"  text response in {_fmt_secs(time.monotonic()-t0)}")
    return _candidate_or_raise(out)

def generate_filename_vision(cfg: Config, images: typing.List[bytes], prompt: str) -> str:
    print(f"Using model: {cfg.model} for image-based processing")
    print(f"Extracted {len(images)} page(s) from PDF, sending all for analysis")
    if not images:
        raise RenameError("render", "no images extracted from PDF")
    for i, img in enumerate(images, start=1):
        _progress(f"Page {i}: Image size: {len(img)} bytes")
        if not img.startswith(PNG_SIGNATURE):
            _progress(f"Page {i}: Warning - Image data does not appear to be a valid PNG")
    t0=time.monotonic()
    out, err=generate(cfg.model, prompt, images=images)
    if err:
        raise RenameError("inference", f"error from Ollama API: {err}")
    # An empty answer is passed on as-is; only the name check below rejects it.
    _progress(f"  vision response in {_fmt_secs(time.monotonic()-t0)}")
    return _candidate_or_raise(out)

def confirm_rename(name: str, mode: str, state: RunState, input_fn=input) -> bool:
    if state.auto:
        return True
    print(f"Suggested new filename ({mode}): {name}.pdf")
    print("Options:")
    print("  y - Rename file")
    print("  n - Keep original name")
    print("  a - Rename all remaining files automatically")
    try:
        answer=input_fn("Choose an option (y/n/a): ")
    except EOFError:
        answer=""
    answer=str(answer or "").strip().lower()
    if answer in ("a","all"):
        state.auto=True
        return True
    if answer in ("y","yes"):
        return True
    print(f"File kept with original name ({mode}).")
    return False

def write_output(src: str, name: str, output_dir: typing.Optional[str]=None) -> str:
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        dst_dir=output_dir
    else:
        dst_dir=os.path.dirname(os.path.abspath(src))
    dst=os.path.join(dst_dir, name+".pdf")
    if os.path.exists(dst) and os.path.samefile(src, dst):
        print(f"File already named: {dst}")
        return dst
    if os.path.isdir(dst):
        raise IsADirectoryError(f"destination is a directory: {dst}")
    shutil.copy2(src, dst)
    print(f"Renamed (saved) file to: {dst}")
    return dst

def _ocr_name(pdf_input: str, cfg: Config) -> str:
    text=extract_text(pdf_input)
    print(f"Extracted text length: {len(text)} characters")
    return generate_filename(cfg, cfg.prompt+OCR_PROMPT_SEPARATOR+text)

def _vision_name(pdf_input: str, cfg: Config) -> str:
    images=render_pages(pdf_input)
    if not images:
        raise RenameError("render", "could not extract any pages from PDF")
    return generate_filename_vision(cfg, images, cfg.prompt+VISION_PROMPT_SUFFIX)

def process_pdf(pdf_input: str, cfg: Config, state: RunState, input_fn=input) -> typing.Tuple[str, typing.Optional[str]]:
    """Name one PDF and write it out.

    Vision is tried first when enabled; any failure there falls back to OCR
    exactly once. OCR failures end processing of this file. Returns
    ``(outcome, error)`` where outcome is one of RENAMED, KEPT or FAILED.
    """
    print(f"Processing: {pdf_input}")
    mode="OCR mode"
    name=None
    try:
        if cfg.vision:
            try:
                name=_vision_name(pdf_input, cfg)
                mode="vision mode"
            except RenameError as e:
                print(f"Error (vision mode, {e.stage}): {e}")
                print("Falling back to OCR mode (using ocrmypdf)...")
                mode="OCR fallback"
        if name is None:
            name=_ocr_name(pdf_input, cfg)
    except RenameError as e:
        return FAILED, f"{e.stage}: {e}"

    if not confirm_rename(name, mode, state, input_fn=input_fn):
        return KEPT, None
    try:
        write_output(pdf_input, name, cfg.output_dir)
    except OSError as e:
        return FAILED, f"write: {e}"
    return RENAMED, None

def _expand_patterns(patterns):
    for pattern in patterns:
        matches=sorted(glob.glob(pattern))
        if not matches:
            print(f"No files match pattern: {pattern}")
            continue
        for path in matches:
            yield path

def run_batch(cfg: Config, patterns: typing.List[str], state: RunState, input_fn=input) -> typing.Dict[str, int]:
    counts={RENAMED:0, KEPT:0, FAILED:0, "skipped":0}
    t0=time.monotonic()
    for pdf_input in _expand_patterns(patterns):
        if not pdf_input.lower().endswith(".pdf"):
            print(f"Skipping non-PDF file: {pdf_input}")
            counts["skipped"]+=1
            continue
        outcome, err=process_pdf(pdf_input, cfg, state, input_fn=input_fn)
        counts[outcome]+=1
        if err:
            print(f"Error processing {pdf_input}: {err}")
    _progress(f"{counts[RENAMED]} renamed, {counts[KEPT]} kept, {counts[FAILED]} failed in {_fmt_secs(time.monotonic()-t0)}")
    print("Processing complete!")
    return counts

EXAMPLES="""Examples:
  ai-pdf-renamer '*.pdf'                    # Process all PDF files
  ai-pdf-renamer '*infographic*.pdf'        # Process files containing 'infographic'
  ai-pdf-renamer file1.pdf file2.pdf        # Process specific files
  ai-pdf-renamer --output renamed/ *.pdf    # Save renamed files to 'renamed' directory
  ai-pdf-renamer --novision *.pdf           # Use OCR-only mode
  ai-pdf-renamer --auto *.pdf               # Process all PDFs automatically
  ai-pdf-renamer -p 'custom prompt' *.pdf   # Use custom prompt for filename generation

Note: Vision-based processing is enabled by default. Use --novision to disable it and use OCR only.
"""

def build_parser() -> argparse.ArgumentParser:
    d=default_config()
    ap=argparse.ArgumentParser(prog="ai-pdf-renamer",
                               description="Rename PDF files from their content using a local Ollama model.",
                               epilog=EXAMPLES, formatter_class=argparse.RawDescriptionHelpFormatter)
    ap.add_argument("patterns", nargs="*", help="Glob patterns or paths of PDF files")
    ap.add_argument("--auto", action="store_true", default=d.auto, help="Automatically rename all files without confirmation")
    ap.add_argument("-p", "--prompt", default=d.prompt, help="Custom prompt for filename generation")
    ap.add_argument("--model", default=d.model, help=f"Ollama model to use (default: {d.model})")
    ap.add_argument("--novision", action="store_true", help="Disable vision-based processing and use OCR only")
    ap.add_argument("--output", default=None, help="Output directory for renamed files (default: same as input)")
    ap.add_argument("--no-progress", action="store_true", help="Disable progress output")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap

def main(argv=None, exit_fn=sys.exit, input_fn=input) -> int:
    ap=build_parser()
    args=ap.parse_args(argv)

    global _PROGRESS_ENABLED
    _PROGRESS_ENABLED=(not args.no_progress)

    cfg=prepare_config(Config(
        auto=args.auto,
        prompt=args.prompt,
        model=args.model,
        vision=(not args.novision),
        output_dir=args.output or None,
    ))

    err=check_dependencies(cfg)
    if err:
        print(err)
        exit_fn(1)
        return 1

    if not args.patterns:
        ap.print_usage()
        print()
        print(EXAMPLES.rstrip())
        exit_fn(1)
        return 1

    run_batch(cfg, args.patterns, RunState.from_config(cfg), input_fn=input_fn)
    return 0

if __name__=="__main__":
    raise SystemExit(main())
