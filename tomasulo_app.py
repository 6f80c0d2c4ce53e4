# tomasulo_app.py
# -------------------------------------------------------------
# Simulador didático do Algoritmo de Tomasulo
# Interface gráfica em Streamlit sobre o núcleo de tomasulo_core.py
# -------------------------------------------------------------
# Principais recursos:
# - Instruções: ADD, SUB, MUL, DIV, LD (SD é aceita pela montagem, sem execução)
# - Estações de reserva Add/Mult/Load configuráveis, renomeação por tags, broadcast
# - Execução passo a passo, rodar N ciclos e rodar até esvaziar
# - Visualizações: Registradores, Estações, Memória, Linha do tempo, Log do ciclo
# -------------------------------------------------------------

from __future__ import annotations
import streamlit as st

from tomasulo_core import (
    DEFAULT_MEMORY,
    DEFAULT_PROGRAM,
    DEFAULT_SIZES,
    SimulationLimitError,
    TomasuloError,
    TomasuloSim,
    assemble,
    parse_memory,
)


def build_sim(prog_text: str, mem_text: str, sizes, strict_rename: bool, store_policy: str) -> TomasuloSim:
    sim = TomasuloSim(sizes, strict_rename=strict_rename, store_policy=store_policy)
    sim.initialize_memory(parse_memory(mem_text))
    sim.load_instructions(assemble(prog_text))
    return sim


st.set_page_config(page_title="Simulador de Tomasulo", layout="wide")

st.title("Simulador de Tomasulo — Estações de Reserva + Renomeação")

with st.sidebar:
    st.header("Configuração")
    rs_add = st.number_input("RS ADD/SUB (tam)", 1, 16, DEFAULT_SIZES["RS_ADD"])
    rs_mul = st.number_input("RS MUL/DIV (tam)", 1, 16, DEFAULT_SIZES["RS_MUL"])
    rs_ld = st.number_input("RS LD (tam)", 1, 16, DEFAULT_SIZES["RS_LD"])
    strict_rename = st.checkbox("Commit só pelo produtor atual (corrige WAW)", value=False)
    store_policy = st.selectbox("SD na cabeça da fila", ["error", "stall"])

    st.markdown("---")
    st.subheader("Memória inicial")
    mem_text = st.text_area(
        "endereço:valor (um por linha)",
        "\n".join(f"{e['address']}:{e['value']}" for e in DEFAULT_MEMORY),
        height=120,
    )

    st.markdown("---")
    runN = st.number_input("Rodar N ciclos", 1, 1000, 10)

prog_text = st.text_area("Programa", value=DEFAULT_PROGRAM, height=220)

# Estado na sessão
if "sim" not in st.session_state or st.button("(Re)Montar & Resetar", type="primary"):
    sizes = {"RS_ADD": int(rs_add), "RS_MUL": int(rs_mul), "RS_LD": int(rs_ld)}
    try:
        st.session_state.sim = build_sim(prog_text, mem_text, sizes, strict_rename, store_policy)
    except TomasuloError as e:
        st.error(f"Erro na montagem: {e}")
        st.stop()

sim: TomasuloSim = st.session_state.sim

# Controles de execução
c1, c2, c3, c4 = st.columns([1, 1, 1, 2])
try:
    if c1.button("Step (1 ciclo)"):
        if sim.is_done():
            st.info("Todas as instruções já foram executadas.")
        else:
            sim.step()
    if c2.button(f"Rodar {runN} ciclos"):
        for _ in range(int(runN)):
            if sim.is_done():
                break
            sim.step()
    if c3.button("Rodar até o fim", type="secondary"):
        sim.run()
    if c4.button("Reset (mantém memória)"):
        program = list(sim.program)
        sim.reset()
        sim.load_instructions(program)
except SimulationLimitError as e:
    st.warning(str(e))
except TomasuloError as e:
    st.error(f"Erro no ciclo {sim.cycle + 1}: {e}")

# Métricas
st.subheader("Métricas")
st.write(sim.metrics())

st.markdown("---")

colA, colB = st.columns(2)
with colA:
    stations = sim.station_snapshot()
    st.markdown("### Estações de Reserva — ADD/SUB")
    st.dataframe(stations["ADD"], use_container_width=True)

    st.markdown("### Estações de Reserva — MUL/DIV")
    st.dataframe(stations["MULT"], use_container_width=True)

    st.markdown("### Estações de Reserva — LD")
    st.dataframe(stations["LOAD"], use_container_width=True)

with colB:
    st.markdown("### Registradores (R0..R31)")
    st.dataframe(sim.register_snapshot(), use_container_width=True, height=420)

    st.markdown("### Memória")
    st.dataframe(sim.memory_snapshot(), use_container_width=True)

st.markdown("### Linha do tempo (issue / início da execução / writeback)")
st.dataframe(sim.timeline(), use_container_width=True)

st.markdown("### Log do ciclo atual")
if sim.events:
    for e in sim.events:
        st.write("• ", e)
else:
    st.write("(sem eventos)")

st.markdown("---")
st.caption("Simulador didático: emissão em ordem de uma instrução por ciclo, sem ROB; o writeback escreve direto no registrador e, por padrão, não confere se a tag ainda é a do produtor atual.")
