# tomasulo_core.py
# -------------------------------------------------------------
# Núcleo do simulador didático do Algoritmo de Tomasulo
# (sem interface gráfica, sem ROB: escrita direta no banco de registradores)
# -------------------------------------------------------------

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Optional, Tuple, Any, Iterable, Mapping, Set
import logging
import math
import operator
import re

logger = logging.getLogger(__name__)

# ==========================
# Parâmetros padrão
# ==========================
DEFAULT_SIZES = {
    "RS_ADD": 3,
    "RS_MUL": 2,
    "RS_LD": 2,
}

NUM_REGS = 32  # R0..R31

STORE_POLICIES = ("error", "stall")


# ==========================
# Erros
# ==========================
class TomasuloError(Exception):
    """Base de todos os erros do simulador."""


class DecodeError(TomasuloError, ValueError):
    """Linha de programa que não pode ser montada."""


class ConfigurationError(TomasuloError, ValueError):
    """Tamanhos de estações, política ou memória inicial inválidos."""


class MalformedInstructionError(TomasuloError, ValueError):
    """Instrução com campos ausentes ou fora de faixa chegando ao issue."""


class UnsupportedInstructionError(TomasuloError, NotImplementedError):
    """Instrução aceita pela gramática mas sem unidade de execução (SD)."""


class SimulationLimitError(TomasuloError, RuntimeError):
    """run() atingiu o limite de ciclos sem esvaziar a máquina."""


# ==========================
# Classes de dados
# ==========================
class Op(str, Enum):
    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    DIV = "DIV"
    LD = "LD"
    SD = "SD"


ARITH_OPS = (Op.ADD, Op.SUB, Op.MUL, Op.DIV)

# Add/Sub dividem a estação ADD, Mul/Div dividem a MULT; SD não tem estação
POOL_OF: Dict[Op, str] = {
    Op.ADD: "ADD",
    Op.SUB: "ADD",
    Op.MUL: "MULT",
    Op.DIV: "MULT",
    Op.LD: "LOAD",
}

LATENCIES: Dict[Op, int] = {
    Op.ADD: 2,
    Op.SUB: 2,
    Op.MUL: 10,
    Op.DIV: 40,
    Op.LD: 2,
}


# eq=False: duas instruções com os mesmos campos continuam distintas
@dataclass(frozen=True, eq=False)
class Instruction:
    op: Op
    rd: Optional[int] = None
    rs1: Optional[int] = None
    rs2: Optional[int] = None
    imm: Optional[int] = None

    def __str__(self):
        if self.op in ARITH_OPS:
            return f"{self.op.value} R{self.rd}, R{self.rs1}, R{self.rs2}"
        if self.op in (Op.LD, Op.SD):
            return f"{self.op.value} R{self.rd}, {self.imm}"
        return f"{self.op} ?"


@dataclass
class RegisterEntry:
    value: Any = 0
    tag: Optional[str] = None  # estação produtora (Qi)


class RegisterFile:
    """Banco de 32 registradores, cada um com valor e tag do produtor."""

    def __init__(self, size: int = NUM_REGS):
        self.entries: List[RegisterEntry] = [RegisterEntry() for _ in range(size)]

    def read(self, reg: int) -> RegisterEntry:
        return self.entries[reg]

    def rename(self, reg: int, tag: str):
        self.entries[reg].tag = tag

    def commit(self, reg: int, value: Any):
        # Não confere se a tag ainda é a do produtor (ver strict_rename)
        entry = self.entries[reg]
        entry.value = value
        entry.tag = None

    def snapshot(self) -> List[Dict[str, Any]]:
        return [
            {"reg": f"R{i}", "value": e.value, "tag": e.tag}
            for i, e in enumerate(self.entries)
        ]

    def __len__(self):
        return len(self.entries)


@dataclass
class ReservationStation:
    name: str
    kind: str  # ADD / MULT / LOAD
    busy: bool = False
    op: Optional[Op] = None
    Vj: Any = None
    Vk: Any = None
    Qj: Optional[str] = None
    Qk: Optional[str] = None
    dest: Optional[int] = None
    imm: Optional[int] = None
    remaining: Optional[int] = None
    executing: bool = False
    instr: Optional[Instruction] = None

    def ready(self) -> bool:
        return self.Qj is None and self.Qk is None

    def clear(self):
        self.busy = False
        self.op = None
        self.Vj = None
        self.Vk = None
        self.Qj = None
        self.Qk = None
        self.dest = None
        self.imm = None
        self.remaining = None
        self.executing = False
        self.instr = None

    def as_row(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "busy": self.busy,
            "op": self.op.value if self.op is not None else None,
            "Vj": self.Vj,
            "Vk": self.Vk,
            "Qj": self.Qj,
            "Qk": self.Qk,
            "dest": f"R{self.dest}" if self.dest is not None else None,
            "imm": self.imm,
            "remaining": self.remaining,
            "executing": self.executing,
            "instr": str(self.instr) if self.instr is not None else None,
        }


class StationPool:
    """Conjunto de estações de um tipo; a ordem de declaração decide o desempate."""

    def __init__(self, kind: str, size: int):
        self.kind = kind
        self.stations: List[ReservationStation] = [
            ReservationStation(name=f"{kind}{i + 1}", kind=kind) for i in range(size)
        ]

    def find_free(self) -> Optional[ReservationStation]:
        for rs in self.stations:
            if not rs.busy:
                return rs
        return None

    def clear(self):
        for rs in self.stations:
            rs.clear()

    def busy_count(self) -> int:
        return sum(1 for rs in self.stations if rs.busy)

    def __iter__(self):
        return iter(self.stations)

    def __len__(self):
        return len(self.stations)


class Memory:
    """Memória esparsa: endereço não inicializado lê 0."""

    def __init__(self):
        self.cells: Dict[int, Any] = {}

    def load(self, entries: Iterable[Mapping[str, Any]]):
        # Valida tudo antes de escrever: ou entra a lista inteira ou nada
        pairs = []
        for entry in entries:
            try:
                address, value = entry["address"], entry["value"]
            except (KeyError, TypeError) as e:
                raise ConfigurationError(f"Entrada de memória inválida: {entry!r}") from e
            if not isinstance(address, int) or isinstance(address, bool):
                raise ConfigurationError(f"Endereço inválido: {address!r}")
            pairs.append((address, value))
        for address, value in pairs:
            self.cells[address] = value

    def read(self, address: int) -> Any:
        return self.cells.get(address, 0)

    def snapshot(self) -> List[Dict[str, Any]]:
        return [{"address": a, "value": v} for a, v in self.cells.items()]


@dataclass
class TimelineEntry:
    issue: Optional[int] = None
    exec_start: Optional[int] = None
    writeback: Optional[int] = None


def _to_float(x):
    try:
        return float(x)
    except OverflowError:
        return math.inf if x > 0 else -math.inf


def _arith(fn, a, b):
    try:
        return fn(a, b)
    except OverflowError:
        # inteiro grande demais para float: refaz em float, saturando em ±inf
        return fn(_to_float(a), _to_float(b))


def _divide(a, b):
    # Divisão real; /0 segue IEEE (inf com sinal, NaN para 0/0) em vez de exceção
    try:
        return _arith(operator.truediv, a, b)
    except ZeroDivisionError:
        if a == 0 or (isinstance(a, float) and math.isnan(a)):
            return math.nan
        return math.copysign(math.inf, _to_float(a)) * math.copysign(1.0, b)


def _check_sizes(sizes: Optional[Mapping[str, int]]) -> Dict[str, int]:
    out = dict(DEFAULT_SIZES)
    for key, value in (sizes or {}).items():
        if key not in DEFAULT_SIZES:
            raise ConfigurationError(f"Tamanho desconhecido: {key}")
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigurationError(f"{key} deve ser inteiro positivo, recebido {value!r}")
        out[key] = value
    return out


# ==========================
# Núcleo do simulador
# ==========================
class TomasuloSim:
    def __init__(
        self,
        sizes: Optional[Mapping[str, int]] = None,
        strict_rename: bool = False,
        store_policy: str = "error",
    ):
        if store_policy not in STORE_POLICIES:
            raise ConfigurationError(f"Política de store inválida: {store_policy!r}")
        self.sizes = _check_sizes(sizes)
        self.strict_rename = strict_rename
        self.store_policy = store_policy

        # Estações de reserva, na ordem em que são varridas a cada fase
        self.pools: Dict[str, StationPool] = {
            "ADD": StationPool("ADD", self.sizes["RS_ADD"]),
            "MULT": StationPool("MULT", self.sizes["RS_MUL"]),
            "LOAD": StationPool("LOAD", self.sizes["RS_LD"]),
        }

        # Memória persiste entre reset()
        self.memory = Memory()

        self._reset_flow()

    def _reset_flow(self):
        self.regs = RegisterFile()
        self.queue: List[Instruction] = []
        self.program: List[Instruction] = []
        self.completed: Set[Instruction] = set()
        self.times: Dict[Instruction, TimelineEntry] = {}
        self._cycle = 0

        # Métricas
        self.issued = 0
        self.stall_cycles = 0

        # Log do ciclo
        self.events: List[str] = []

    # ----------- Configuração -----------
    def initialize_memory(self, entries: Iterable[Mapping[str, Any]]):
        self.memory.load(entries)

    def load_instructions(self, instructions: Iterable[Instruction]):
        program = list(instructions)
        for instr in program:
            if not isinstance(instr, Instruction):
                raise MalformedInstructionError(f"Não é uma instrução: {instr!r}")
        self.queue = list(program)
        self.program = program

    def reset(self):
        for pool in self.pools.values():
            pool.clear()
        self._reset_flow()

    # ----------- Utilitários -----------
    @property
    def cycle(self) -> int:
        return self._cycle

    def stations(self) -> List[ReservationStation]:
        return [rs for pool in self.pools.values() for rs in pool]

    def _log(self, msg: str):
        self.events.append(msg)
        logger.debug("ciclo %d: %s", self.cycle, msg)

    def _check_reg(self, instr: Instruction, reg: Optional[int], what: str):
        if reg is None:
            raise MalformedInstructionError(f"{instr}: {what} ausente")
        if not isinstance(reg, int) or isinstance(reg, bool) or not 0 <= reg < len(self.regs):
            raise MalformedInstructionError(f"{instr}: {what} fora de R0..R{len(self.regs) - 1}")

    def validate(self, instr: Instruction):
        """Falha antes de qualquer mutação se a instrução não puder ir ao issue."""
        if not isinstance(instr.op, Op):
            raise MalformedInstructionError(f"Operação desconhecida: {instr.op!r}")
        if instr.op is Op.SD and self.store_policy == "error":
            raise UnsupportedInstructionError(f"{instr}: SD não tem unidade de execução")
        self._check_reg(instr, instr.rd, "destino")
        if instr.op in ARITH_OPS:
            self._check_reg(instr, instr.rs1, "fonte 1")
            self._check_reg(instr, instr.rs2, "fonte 2")
            return
        # LD/SD Rd, offset: sem registradores fonte
        if instr.rs1 is not None or instr.rs2 is not None:
            raise MalformedInstructionError(f"{instr}: {instr.op.value} não lê registradores fonte")
        if instr.imm is None or not isinstance(instr.imm, int) or isinstance(instr.imm, bool):
            raise MalformedInstructionError(f"{instr}: deslocamento ausente")

    def get_src(self, reg: int) -> Tuple[Any, Optional[str]]:
        entry = self.regs.read(reg)
        if entry.tag is not None:
            return None, entry.tag
        return entry.value, None

    def is_done(self) -> bool:
        return not self.queue and not any(rs.busy for rs in self.stations())

    # ----------- Issue -----------
    def issue(self, instr: Instruction) -> bool:
        if instr in self.completed:
            self._log(f"Issue recusado: {instr} já concluída")
            return False

        kind = POOL_OF.get(instr.op)
        if kind is None:
            self._log(f"Stall: {instr} sem estação de reserva")
            return False

        rs = self.pools[kind].find_free()
        if rs is None:
            self._log(f"Stall estrutural: nenhuma estação {kind} livre para {instr}")
            return False

        # Operandos lidos antes de ocupar a estação e de renomear o destino (ADD R1, R1, R1)
        Vj, Qj = self.get_src(instr.rs1) if instr.rs1 is not None else (None, None)
        Vk, Qk = self.get_src(instr.rs2) if instr.rs2 is not None else (None, None)

        rs.busy = True
        rs.op = instr.op
        rs.instr = instr
        rs.dest = instr.rd
        rs.imm = instr.imm
        rs.remaining = None
        rs.Vj, rs.Qj = Vj, Qj
        rs.Vk, rs.Qk = Vk, Qk

        self.regs.rename(instr.rd, rs.name)

        self.issued += 1
        self.times.setdefault(instr, TimelineEntry()).issue = self.cycle
        self._log(f"Issue: {instr} -> {rs.name}")
        return True

    # ----------- Execução -----------
    def _start(self, rs: ReservationStation):
        rs.remaining = LATENCIES[rs.op]
        rs.executing = True
        self.times.setdefault(rs.instr, TimelineEntry()).exec_start = self.cycle
        self._log(f"Exec start: {rs.name} ({rs.op.value}, {rs.remaining} ciclos)")

    def execute(self):
        for rs in self.stations():
            if not rs.busy or not rs.ready():
                continue
            if not rs.executing:
                self._start(rs)
            elif rs.remaining > 0:
                rs.remaining -= 1

    # ----------- Writeback -----------
    def compute(self, rs: ReservationStation) -> Any:
        op = rs.op
        if op is Op.ADD:
            return _arith(operator.add, rs.Vj, rs.Vk)
        if op is Op.SUB:
            return _arith(operator.sub, rs.Vj, rs.Vk)
        if op is Op.MUL:
            return _arith(operator.mul, rs.Vj, rs.Vk)
        if op is Op.DIV:
            return _divide(rs.Vj, rs.Vk)
        if op is Op.LD:
            return self.memory.read(rs.imm)
        raise MalformedInstructionError(f"{rs.name}: operação sem resultado {op!r}")

    def broadcast(self, tag: str, value: Any, source: ReservationStation):
        for rs in self.stations():
            if rs is source or not rs.busy:
                continue
            woke = False
            if rs.Qj == tag:
                rs.Vj, rs.Qj = value, None
                woke = True
            if rs.Qk == tag:
                rs.Vk, rs.Qk = value, None
                woke = True
            # Começa a contar já neste ciclo, sem esperar a próxima fase de execução
            if woke and rs.ready() and not rs.executing:
                self._start(rs)

    def writeback(self):
        for rs in self.stations():
            if not (rs.busy and rs.executing and rs.remaining == 0):
                continue
            value = self.compute(rs)
            tag = rs.name

            current = self.regs.read(rs.dest).tag
            if self.strict_rename and current != tag:
                self._log(f"Writeback: {tag} = {value}, R{rs.dest} já pertence a {current}")
            else:
                self.regs.commit(rs.dest, value)
                self._log(f"Writeback: {tag} = {value} -> R{rs.dest}")

            self.broadcast(tag, value, rs)

            self.completed.add(rs.instr)
            self.times.setdefault(rs.instr, TimelineEntry()).writeback = self.cycle
            rs.clear()

    # ----------- Um ciclo completo -----------
    def step(self):
        head = self.queue[0] if self.queue else None
        if head is not None:
            self.validate(head)

        self._cycle += 1
        self.events = []

        if head is not None:
            if self.issue(head):
                self.queue.pop(0)
            else:
                self.stall_cycles += 1

        self.execute()
        self.writeback()

    def run(self, max_cycles: int = 10000) -> int:
        steps = 0
        while not self.is_done():
            if steps >= max_cycles:
                raise SimulationLimitError(f"Máquina não esvaziou em {max_cycles} ciclos")
            self.step()
            steps += 1
        return steps

    # ----------- Observação -----------
    def register_snapshot(self) -> List[Dict[str, Any]]:
        return self.regs.snapshot()

    def station_snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {kind: [rs.as_row() for rs in pool] for kind, pool in self.pools.items()}

    def memory_snapshot(self) -> List[Dict[str, Any]]:
        return self.memory.snapshot()

    def timeline(self) -> List[Dict[str, Any]]:
        rows = []
        for i, instr in enumerate(self.program):
            t = self.times.get(instr, TimelineEntry())
            rows.append({
                "#": i,
                "instr": str(instr),
                "issue": t.issue,
                "exec": t.exec_start,
                "writeback": t.writeback,
            })
        return rows

    # ----------- Métricas -----------
    def metrics(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "Ciclos": self.cycle,
            "Emitidas": self.issued,
            "Concluídas": len(self.completed),
            "Stalls de emissão": self.stall_cycles,
            "Fila": len(self.queue),
        }
        for kind, pool in self.pools.items():
            out[f"RS_{kind} ocupadas"] = pool.busy_count()
        return out


# ==========================
# Montagem simples
# ==========================
COMMENT_RE = re.compile(r"[#;].*$")
MEM_ENTRY_RE = re.compile(r"^(-?\d+)\s*[:=]\s*(-?\d+)$")


def parse_reg(tok: str) -> int:
    tok = tok.strip().upper()
    if not re.fullmatch(r"R\d+", tok):
        raise DecodeError(f"Registrador inválido: {tok}")
    n = int(tok[1:])
    if n >= NUM_REGS:
        raise DecodeError(f"Registrador fora de faixa: {tok}")
    return n


def parse_int(tok: str) -> int:
    try:
        return int(tok, 16) if tok.lower().startswith(("0x", "-0x")) else int(tok)
    except ValueError as e:
        raise DecodeError(f"Inteiro inválido: {tok}") from e


def parse_instruction(line: str) -> Instruction:
    parts = [p for p in re.split(r"[\s,]+", line.strip()) if p]
    if not parts:
        raise DecodeError("Linha vazia")
    mnemonic = parts[0].upper()
    try:
        op = Op(mnemonic)
    except ValueError as e:
        raise DecodeError(f"Opcode inválido: {mnemonic}") from e

    args = parts[1:]
    if op in ARITH_OPS:
        if len(args) != 3:
            raise DecodeError(f"{mnemonic} espera Rd, Rs, Rt: {line.strip()}")
        return Instruction(op=op, rd=parse_reg(args[0]), rs1=parse_reg(args[1]), rs2=parse_reg(args[2]))

    # LD/SD Rd, offset
    if len(args) != 2:
        raise DecodeError(f"{mnemonic} espera Rd, offset: {line.strip()}")
    return Instruction(op=op, rd=parse_reg(args[0]), imm=parse_int(args[1]))


def assemble(text: str) -> List[Instruction]:
    out: List[Instruction] = []
    for n, raw in enumerate(text.splitlines(), 1):
        l = COMMENT_RE.sub("", raw).strip()
        if not l:
            continue
        try:
            out.append(parse_instruction(l))
        except DecodeError as e:
            raise DecodeError(f"linha {n}: {e}") from e
    return out


def parse_memory(text: str) -> List[Dict[str, int]]:
    """Lê pares "endereço:valor" separados por vírgula ou quebra de linha."""
    out: List[Dict[str, int]] = []
    for tok in re.split(r"[,\n]+", text):
        tok = tok.strip()
        if not tok:
            continue
        m = MEM_ENTRY_RE.match(tok)
        if not m:
            raise ConfigurationError(f"Entrada de memória inválida: {tok}")
        out.append({"address": int(m.group(1)), "value": int(m.group(2))})
    return out


# ==========================
# Programa exemplo
# ==========================
DEFAULT_PROGRAM = """
# Exemplo didático: load, dependências RAW e divisão longa
# Memória: mem[0]=5, mem[1]=10, mem[2]=15

LD R1, 0          # R1 = mem[0] (=5)
ADD R2, R1, R1    # R2 = 5 + 5
MUL R3, R2, R2    # R3 = 10 * 10
SUB R4, R3, R2    # R4 = 100 - 10
DIV R5, R4, R1    # R5 = 90 / 5
"""

DEFAULT_MEMORY = [
    {"address": 0, "value": 5},
    {"address": 1, "value": 10},
    {"address": 2, "value": 15},
]
