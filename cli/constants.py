# Defaults for the three inputs. Each can be overridden by the environment
# variable of the same role (see ENV_* below) or on the command line.
DEFAULT_COMMIT = "master"
DEFAULT_PREFIX_RELATIVE = "vendor/openssl"
DEFAULT_OPENSSLDIR = "/usr/local/ssl"

ENV_COMMIT = "COMMIT"
ENV_PREFIX = "PREFIX"
ENV_OPENSSLDIR = "OPENSSLDIR"
ENV_MAKE = "MAKE"
ENV_SHOW_CMDS = "OSSL_VENDOR_SHOW_CMDS"

UPSTREAM_REPO_URL = "https://github.com/openssl/openssl"

# Passed to ./Configure as a single argument. $(LIBRPATH) is left for make
# to expand; it is never seen by a shell.
RPATH_LINKER_FLAG = "-Wl,--enable-new-dtags,-rpath,$(LIBRPATH)"

DEFAULT_INSTALL_TARGET = "install"
DEFAULT_DOWNLOAD_TIMEOUT_S = 60.0

SCRATCH_DIR_PREFIX = "ossl-vendor-"

# How many trailing lines of a failed stage's output are kept on the error.
OUTPUT_TAIL_LINES = 40
