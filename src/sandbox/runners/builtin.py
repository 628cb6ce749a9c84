from __future__ import annotations

from .base import DEFAULT_RESOURCE_MARKERS, Adapter

PYTHON = Adapter(
    name="python",
    aliases=("py", "python3", "python-like"),
    source_file="main.py",
    run=("python3", "-I", "-B", "-u", "{source}"),
    runtime="python",
)

NODE = Adapter(
    name="node",
    aliases=("javascript", "js", "nodejs"),
    source_file="main.js",
    run=("node", "--max-old-space-size={memory_mb}", "{source}"),
    runtime="node",
    limit_address_space=False,
    default_limits={"max_processes": 64},
    resource_markers=DEFAULT_RESOURCE_MARKERS + ("JavaScript heap out of memory",),
)

BASH = Adapter(
    name="bash",
    aliases=("sh", "shell"),
    source_file="main.sh",
    run=("bash", "--noprofile", "--norc", "{source}"),
    runtime="bash",
    # bash reports a refused fork itself; from other runtimes EAGAIN is an ordinary error
    resource_markers=DEFAULT_RESOURCE_MARKERS + ("fork: retry", "fork: Resource temporarily unavailable"),
)

RUBY = Adapter(
    name="ruby",
    aliases=("rb",),
    source_file="main.rb",
    run=("ruby", "{source}"),
    runtime="ruby",
    resource_markers=DEFAULT_RESOURCE_MARKERS + ("NoMemoryError", "failed to allocate memory"),
)

C = Adapter(
    name="c",
    source_file="main.c",
    compile=("gcc", "-O2", "-std=c11", "-o", "{stem}", "{source}", "-lm"),
    compile_runtime="gcc",
    run=("./{stem}",),
)

CPP = Adapter(
    name="cpp",
    aliases=("c++", "cxx"),
    source_file="main.cpp",
    compile=("g++", "-O2", "-std=c++17", "-o", "{stem}", "{source}"),
    compile_runtime="g++",
    run=("./{stem}",),
)

JAVA = Adapter(
    name="java",
    source_file="Main.java",
    compile=("javac", "-J-Xmx256m", "{source}"),
    compile_runtime="javac",
    run=("java", "-Xmx{memory_mb}m", "-XX:+UseSerialGC", "-cp", ".", "{stem}"),
    runtime="java",
    limit_address_space=False,
    default_limits={"max_processes": 64},
    resource_markers=DEFAULT_RESOURCE_MARKERS + ("java.lang.OutOfMemoryError",),
)

GO = Adapter(
    name="go",
    aliases=("golang",),
    source_file="main.go",
    compile=("go", "build", "-o", "{stem}", "{source}"),
    compile_runtime="go",
    run=("./{stem}",),
    limit_address_space=False,
    env={"GOCACHE": "{workdir}/.gocache", "GOPATH": "{workdir}/.gopath", "CGO_ENABLED": "0"},
    default_limits={"max_processes": 64},
    resource_markers=DEFAULT_RESOURCE_MARKERS + ("runtime: out of memory",),
)

BUILTIN_ADAPTERS = (PYTHON, NODE, BASH, RUBY, C, CPP, JAVA, GO)
