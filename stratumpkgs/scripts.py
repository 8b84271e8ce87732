"""Builder scripts, addressed as text store paths.

Each script is a ``builtins.toFile``-style object: its store path depends
only on its name and bytes, so derivations can name it before anything
is built.
"""

from stratum.store_path import STORE_DIR, make_text_store_path

SETUP_SH_TEXT = """\
# Minimal stdenv setup: PATH from initialPath and native inputs, then hooks.
set -eu
PATH=
for p in $initialPath $defaultNativeBuildInputs; do
  PATH="${PATH:+$PATH:}$p/bin"
done
export PATH
eval "${preHook:-}"
runHook() { eval "${!1:-}"; }
genericBuild() {
  if [ -n "${buildCommand:-}" ]; then eval "$buildCommand"; return; fi
  for phase in unpackPhase configurePhase buildPhase checkPhase installPhase fixupPhase; do
    runHook "$phase"
  done
  runHook postFixup
}
"""

STDENV_BUILDER_SH_TEXT = """\
mkdir "$out"
printf '%s\\n' "$setup" > "$out/setup-ref"
cp "$setup" "$out/setup"
printf 'export SHELL=%s\\n' "$shell" >> "$out/setup"
printf 'initialPath="%s"\\n' "$initialPath" >> "$out/setup"
printf 'defaultNativeBuildInputs="%s"\\n' "$defaultNativeBuildInputs" >> "$out/setup"
"""

SOURCE_STDENV_SH_TEXT = """\
source "$stdenv/setup"
source "$1"
"""

DEFAULT_BUILDER_SH_TEXT = "genericBuild\n"

UNPACK_BOOTSTRAP_TOOLS_SH_TEXT = """\
# Unpack the seed tarball with nothing but a static busybox.
echo Unpacking the bootstrap tools...
$builder mkdir $out
< $tarball $builder unxz | $builder tar x -C $out
LD_LIBRARY_PATH=$out/lib $out/lib/ld-linux*.so.? $out/bin/patchelf \\
  --set-interpreter $out/lib/ld-linux*.so.? --set-rpath $out/lib --force-rpath $out/bin/* || true
ln -s bash $out/bin/sh
"""

NUKE_REFS_SH_TEXT = f"""\
#! @shell@ -e
# Replace every store hash except the excluded ones with eeeeeeee...
excludes=""
while getopts e: o; do
  case "$o" in
    e) excludes="$excludes(?!$(basename "$OPTARG" | cut -c1-32))";;
  esac
done
shift $((OPTIND-1))
for i in "$@"; do
  if test ! -L "$i" -a -f "$i"; then
    cat "$i" | @perl@/bin/perl -pe "s|\\Q{STORE_DIR}\\E/$excludes[a-z0-9]{{32}}-|{STORE_DIR}/eeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee-|g" > "$i.tmp"
    if test -x "$i"; then chmod +x "$i.tmp"; fi
    mv "$i.tmp" "$i"
  fi
done
"""

COPY_OUTPUTS_SH_TEXT = """\
# Copy each output of $source into the matching output of this derivation.
for o in $outputs; do
  src=$(eval echo "\\$source_$o")
  mkdir -p "${!o}"
  cp -a "$src"/. "${!o}"/
  chmod -R u+w "${!o}"
done
"""


def _script(name: str, text: str) -> str:
    return make_text_store_path(name, text.encode())


SETUP_SH = _script("setup.sh", SETUP_SH_TEXT)
STDENV_BUILDER_SH = _script("builder.sh", STDENV_BUILDER_SH_TEXT)
SOURCE_STDENV_SH = _script("source-stdenv.sh", SOURCE_STDENV_SH_TEXT)
DEFAULT_BUILDER_SH = _script("default-builder.sh", DEFAULT_BUILDER_SH_TEXT)
UNPACK_BOOTSTRAP_TOOLS_SH = _script("unpack-bootstrap-tools.sh", UNPACK_BOOTSTRAP_TOOLS_SH_TEXT)
NUKE_REFS_SH = _script("nuke-refs.sh", NUKE_REFS_SH_TEXT)
COPY_OUTPUTS_SH = _script("copy-outputs.sh", COPY_OUTPUTS_SH_TEXT)

STDENV_SCRIPTS = (SETUP_SH, STDENV_BUILDER_SH)
GENERIC_SCRIPTS = (SOURCE_STDENV_SH, DEFAULT_BUILDER_SH)
